from __future__ import annotations
import base64
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, update
from sqlalchemy.orm import sessionmaker

from oauth_vault.core.clock import Clock, as_utc, utcnow
from oauth_vault.core.errors import StateError, ValidationError
from oauth_vault.core.logging import mask
from oauth_vault.db.models import OAuthState

logger = logging.getLogger(__name__)

MAX_STATE_LENGTH = 512
MIN_TTL_SECONDS = 30


def _b64e(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def generate_state_id() -> str:
    return secrets.token_urlsafe(32)  # 256 bits


def generate_code_verifier() -> str:
    return _b64e(secrets.token_bytes(32))  # 43 chars, within RFC 7636's 43..128


def code_challenge_for(verifier: str) -> str:
    return _b64e(hashlib.sha256(verifier.encode("ascii")).digest())


def _same(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


@dataclass(frozen=True)
class IssuedState:
    state_id: str
    pkce_challenge: Optional[str]
    expires_at: datetime


@dataclass(frozen=True)
class ConsumedState:
    subject_id: str
    organization_id: str
    platform: str
    pkce_verifier: Optional[str]


class StateManager:
    """
    Issues anti-CSRF state tickets bound to (subject, organization, platform) and
    validates them exactly once. Consumption is a single conditional UPDATE so two
    racing callbacks cannot both succeed.
    """

    def __init__(self, session_factory: sessionmaker, ttl_seconds: int = 600, clock: Clock = utcnow):
        self._sessions = session_factory
        self.ttl = timedelta(seconds=max(MIN_TTL_SECONDS, int(ttl_seconds)))
        self._now = clock

    def issue(self, subject_id: str, organization_id: str, platform: str, use_pkce: bool = False) -> IssuedState:
        if not subject_id or not organization_id or not platform:
            raise ValidationError("subject_id, organization_id and platform are required")

        now = self._now()
        state_id = generate_state_id()
        verifier = generate_code_verifier() if use_pkce else None

        with self._sessions() as db:
            db.add(OAuthState(
                state_id=state_id,
                subject_id=subject_id,
                organization_id=organization_id,
                platform=platform,
                pkce_verifier=verifier,
                created_at=now,
                expires_at=now + self.ttl,
                consumed=False,
            ))
            db.commit()

        logger.info("state issued", extra={"platform": platform, "state": mask(state_id), "pkce": use_pkce})
        return IssuedState(
            state_id=state_id,
            pkce_challenge=code_challenge_for(verifier) if verifier else None,
            expires_at=now + self.ttl,
        )

    def validate_and_consume(
        self,
        state_id: str,
        subject_id: str,
        organization_id: str,
        platform: Optional[str] = None,
    ) -> ConsumedState:
        if not state_id or len(state_id) > MAX_STATE_LENGTH:
            raise ValidationError("malformed state")

        now = self._now()
        with self._sessions() as db:
            row = db.get(OAuthState, state_id)
            if row is None:
                raise StateError(StateError.NOT_FOUND)

            # expiry wins over every other check, identity included
            if as_utc(row.expires_at) <= now:
                raise StateError(StateError.EXPIRED)
            if row.consumed:
                raise StateError(StateError.REPLAY)

            # evaluate all comparisons so timing does not reveal which one failed
            matches = [
                _same(row.subject_id, subject_id or ""),
                _same(row.organization_id, organization_id or ""),
            ]
            if platform is not None:
                matches.append(_same(row.platform, platform))
            if not all(matches):
                raise StateError(StateError.MISMATCH)

            result = db.execute(
                update(OAuthState)
                .where(
                    OAuthState.state_id == state_id,
                    OAuthState.consumed.is_(False),
                    OAuthState.expires_at > now,
                )
                .values(consumed=True)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if result.rowcount != 1:
                # another callback consumed it between our read and the update
                raise StateError(StateError.REPLAY)

            return ConsumedState(
                subject_id=row.subject_id,
                organization_id=row.organization_id,
                platform=row.platform,
                pkce_verifier=row.pkce_verifier,
            )

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Evict expired tickets. Consumed ones stay until expiry so a replay still reads as a replay."""
        cutoff = now or self._now()
        with self._sessions() as db:
            result = db.execute(
                delete(OAuthState).where(OAuthState.expires_at <= cutoff)
            )
            db.commit()
            return result.rowcount or 0

