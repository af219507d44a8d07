import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from escrowguard.config import settings
from escrowguard.errors import Conflict, TransientInfrastructure

logger = logging.getLogger(__name__)


def _engine_kwargs(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    kwargs = {"connect_args": {"check_same_thread": False}}
    # in-memory SQLite lives on a single connection
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return kwargs


engine = create_engine(settings.database_url, **_engine_kwargs(settings.database_url))
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

def ping_db() -> bool:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return True


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """
    All-or-nothing unit of work:
      - commit once when the block finishes
      - roll back every pending write on any exception
      - unique-index violations surface as Conflict, lost connections /
        lock timeouts as TransientInfrastructure
    """
    try:
        yield db
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.info(f"Integrity violation rolled back: {exc.orig}")
        raise Conflict("A conflicting operation is already in progress for this resource") from exc
    except OperationalError as exc:
        db.rollback()
        logger.error(f"Database failure rolled back: {exc.orig}")
        raise TransientInfrastructure("Temporary database failure; please retry") from exc
    except BaseException:
        db.rollback()
        raise
