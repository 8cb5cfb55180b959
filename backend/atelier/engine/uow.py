# backend/atelier/engine/uow.py
"""Transaction boundary shared by every engine command."""
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from ..core.logging import get_logger
from .errors import EntityNotFound, StaleWriteError

logger = get_logger(__name__)


@contextmanager
def atomic(db: Session, entity: str = "entity", entity_id=None) -> Iterator[Session]:
    """
    Commit on success, roll back on any error.

    A version-counter mismatch at flush/commit time means another command
    won the race; it surfaces as StaleWriteError. Unique-key collisions on
    the same rows (duplicate ledger keys, a second contract for one
    proposal) are the same race seen through a constraint.
    """
    try:
        yield db
        db.commit()
    except StaleDataError as e:
        db.rollback()
        logger.warning("stale write on %s %s: %s", entity, entity_id, e)
        raise StaleWriteError(entity, entity_id) from e
    except IntegrityError as e:
        db.rollback()
        logger.warning("conflicting write on %s %s: %s", entity, entity_id, e.orig)
        raise StaleWriteError(entity, entity_id) from e
    except Exception:
        db.rollback()
        raise


def load(db: Session, model, entity_id, entity: Optional[str] = None):
    row = db.get(model, entity_id)
    if row is None:
        raise EntityNotFound(entity or model.__name__, entity_id)
    return row


def touch(row, now) -> None:
    """Force an UPDATE (and a version bump) on `row` even if nothing else changed."""
    row.updated_at = now
    flag_modified(row, "updated_at")


def check_version(row, expected: Optional[int], entity: str) -> None:
    """Fail before mutating when the caller acted on an outdated read."""
    if expected is not None and row.version != expected:
        raise StaleWriteError(
            entity,
            row.id,
            f"{entity} {row.id} is at version {row.version}, not {expected}; reload and retry",
        )
