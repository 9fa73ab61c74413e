import pytest

from souk_payments.config import Settings
from souk_payments.database import Base
from souk_payments.main import build_services
from souk_payments.models import PaymentMethod
from tests.db import FakeProvider, TestingSessionLocal, engine


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def payouts(mocker):
    gateway = mocker.Mock()
    gateway.transfer.return_value = "tr_1"
    return gateway


@pytest.fixture
def services(settings, provider, payouts):
    return build_services(settings, TestingSessionLocal, providers={PaymentMethod.CARD: provider}, payouts=payouts)

