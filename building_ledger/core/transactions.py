import logging
from typing import Callable, Optional, TypeVar

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..config import settings
from .errors import ConcurrencyError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_atomic(
    session: Session,
    operation: Callable[[Session], T],
    *,
    name: str = "ledger operation",
    attempts: Optional[int] = None,
) -> T:
    """Run ``operation`` as one unit of work and commit it.

    Any exception rolls the whole unit back. Optimistic-lock conflicts on
    apartment rows are retried with fresh state; ``operation`` must therefore
    re-read everything it mutates.
    """
    max_attempts = max(1, attempts or settings.transaction_retry_attempts)
    for attempt in range(1, max_attempts + 1):
        try:
            result = operation(session)
            session.commit()
            return result
        except StaleDataError as exc:
            session.rollback()
            if attempt == max_attempts:
                logger.error("%s failed after %s attempts due to concurrent updates", name, attempt)
                raise ConcurrencyError(f"{name} conflicted with a concurrent update; please retry") from exc
            logger.warning("%s hit a concurrent update (attempt %s/%s); retrying", name, attempt, max_attempts)
        except Exception:
            session.rollback()
            raise
    raise ConcurrencyError(f"{name} could not be completed")  # pragma: no cover
