from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from oauth_vault.core.errors import RateLimitError, ValidationError
from oauth_vault.db.models import RateLimitCounter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_after: int

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_after),
        }


class RateLimiter:
    """
    Fixed-window counters keyed by (caller, endpoint class), one row per window.
    A new window is a new row, so rollover resets the count without touching other keys.
    The increment is a single UPDATE; the row is inserted on first use.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        rules: Dict[str, Tuple[int, int]],
        clock: Callable[[], float] = time.time,
    ):
        self._sessions = session_factory
        self.rules = dict(rules)
        self._now = clock

    def _bump(self, caller: str, endpoint_class: str, window_start: int, window_seconds: int) -> int:
        key = (
            RateLimitCounter.caller == caller,
            RateLimitCounter.endpoint_class == endpoint_class,
            RateLimitCounter.window_start == window_start,
        )
        increment = (
            update(RateLimitCounter)
            .where(*key)
            .values(count=RateLimitCounter.count + 1)
            .execution_options(synchronize_session=False)
        )
        with self._sessions() as db:
            if db.execute(increment).rowcount == 0:
                try:
                    db.add(RateLimitCounter(
                        caller=caller,
                        endpoint_class=endpoint_class,
                        window_start=window_start,
                        window_seconds=window_seconds,
                        count=1,
                    ))
                    db.commit()
                    return 1
                except IntegrityError:
                    # lost the insert race; the row exists now
                    db.rollback()
                    db.execute(increment)
            # read inside the same transaction so the count is the one we wrote
            count = db.scalar(select(RateLimitCounter.count).where(*key)) or 0
            db.commit()
            return count

    def admit(self, caller_identity: str, endpoint_class: str) -> RateLimitDecision:
        rule = self.rules.get(endpoint_class)
        if rule is None:
            raise ValidationError(f"unknown endpoint class {endpoint_class!r}")
        if not caller_identity:
            raise ValidationError("caller identity required")
        max_requests, window_seconds = rule

        now = int(self._now())
        window_start = now - (now % window_seconds)  # start-of-window
        count = self._bump(caller_identity, endpoint_class, window_start, window_seconds)

        reset_after = max(0, window_start + window_seconds - now)
        remaining = max_requests - count
        if remaining < 0:
            logger.warning(
                "rate limit exceeded",
                extra={"endpoint_class": endpoint_class, "retry_after": reset_after},
            )
            raise RateLimitError(reset_after, endpoint_class)
        return RateLimitDecision(allowed=True, limit=max_requests, remaining=remaining, reset_after=reset_after)

    def purge_expired_counters(self, now: Optional[float] = None) -> int:
        """Drop counters whose window has closed."""
        current = int(now if now is not None else self._now())
        with self._sessions() as db:
            result = db.execute(
                delete(RateLimitCounter)
                .where(RateLimitCounter.window_start + RateLimitCounter.window_seconds <= current)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount or 0
