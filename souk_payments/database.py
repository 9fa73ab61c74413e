import logging

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base

from souk_payments.config import get_settings
from souk_payments.errors import InternalError, PaymentError

logger = logging.getLogger(__name__)


def make_engine(database_url: str):
    return create_engine(
        database_url,
        connect_args={"check_same_thread": False} if database_url.startswith("sqlite") else {}
    )


DATABASE_URL = get_settings().database_url

engine = make_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
Base = declarative_base()


class StaleWrite(Exception):
    """A compare-and-set update matched no row; the unit of work must be retried."""


def run_in_transaction(session_factory, work, attempts: int = 5):
    """
    Run ``work(session)`` and commit it as one unit.

    Compare-and-set conflicts and unique-key races roll back and retry with a
    fresh session. Domain errors roll back and propagate; any other database
    failure rolls back and surfaces as ``InternalError``.
    """
    for attempt in range(1, attempts + 1):
        session = session_factory()
        try:
            result = work(session)
            session.commit()
            return result
        except (StaleWrite, IntegrityError) as exc:
            session.rollback()
            logger.info("Ledger write conflict (attempt %s/%s): %s", attempt, attempts, exc.__class__.__name__)
        except PaymentError:
            session.rollback()
            raise
        except SQLAlchemyError:
            session.rollback()
            logger.exception("Ledger store write failed")
            raise InternalError("Ledger store write failed")
        finally:
            session.close()
    raise InternalError("Ledger store is under contention, try again")
