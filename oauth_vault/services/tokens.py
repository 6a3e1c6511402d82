from __future__ import annotations
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from oauth_vault.core.clock import as_utc, utcnow
from oauth_vault.core.errors import DecryptionError
from oauth_vault.db.models import TokenRecord
from oauth_vault.services.crypto import EncryptedPayload, TokenCipher
from oauth_vault.services.platforms import AccountProfile, TokenGrant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenPayload:
    access_token: str
    refresh_token: Optional[str]
    token_type: Optional[str]


@dataclass(frozen=True)
class ConnectedAccount:
    platform: str
    subject_id: str
    granted_scopes: List[str]
    access_expires_at: Optional[datetime]
    refresh_available: bool
    connected_at: datetime
    last_used_at: Optional[datetime] = None
    platform_user_id: Optional[str] = None
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


def _aad(subject_id: str, platform: str) -> bytes:
    # binds the ciphertext to its vault key; a row copied elsewhere will not decrypt
    return f"{subject_id}:{platform}".encode("utf-8")


def _sealed(row: TokenRecord) -> EncryptedPayload:
    return EncryptedPayload(ciphertext=row.ciphertext, iv=row.iv, auth_tag=row.auth_tag, key_version=row.key_version)


def summarize(row: TokenRecord) -> ConnectedAccount:
    return ConnectedAccount(
        platform=row.platform,
        subject_id=row.subject_id,
        granted_scopes=json.loads(row.scopes_json or "[]"),
        access_expires_at=as_utc(row.access_expires_at),
        refresh_available=row.refresh_available,
        connected_at=as_utc(row.created_at),
        last_used_at=as_utc(row.last_used_at),
        platform_user_id=row.platform_user_id,
        username=row.username,
        display_name=row.display_name,
        avatar_url=row.avatar_url,
    )


class TokenVault:
    """Encrypted token records keyed by (subject_id, platform). Plaintext never reaches the database."""

    def __init__(self, session_factory: sessionmaker, cipher: TokenCipher):
        self._sessions = session_factory
        self.cipher = cipher

    @staticmethod
    def _find(db: Session, subject_id: str, platform: str) -> Optional[TokenRecord]:
        return db.scalar(
            select(TokenRecord).where(TokenRecord.subject_id == subject_id, TokenRecord.platform == platform)
        )

    def decrypt(self, row: TokenRecord) -> TokenPayload:
        doc = self.cipher.decrypt_json(_sealed(row), _aad(row.subject_id, row.platform))
        return TokenPayload(
            access_token=doc["access_token"],
            refresh_token=doc.get("refresh_token"),
            token_type=doc.get("token_type"),
        )

    def get(self, subject_id: str, platform: str) -> Optional[TokenRecord]:
        with self._sessions() as db:
            return self._find(db, subject_id, platform)

    def store(
        self,
        subject_id: str,
        platform: str,
        grant: TokenGrant,
        granted_scopes: List[str],
        profile: Optional[AccountProfile] = None,
    ) -> ConnectedAccount:
        """
        Upsert the record. A refresh passes no profile and keeps the stored one; a
        connect as a different platform account replaces it and drops the old refresh token.
        """
        with self._sessions() as db:
            row = self._find(db, subject_id, platform)
            same_account = (
                row is None or profile is None or row.platform_user_id is None
                or row.platform_user_id == profile.platform_user_id
            )

            refresh_token = grant.refresh_token
            if refresh_token is None and row is not None and row.refresh_available and same_account:
                # platforms omit refresh_token on re-consent and on most refreshes
                try:
                    refresh_token = self.decrypt(row).refresh_token
                except DecryptionError:
                    logger.warning("existing token record unreadable; dropping its refresh token",
                                   extra={"platform": platform})

            sealed = self.cipher.encrypt_json(
                {"access_token": grant.access_token, "refresh_token": refresh_token, "token_type": grant.token_type},
                _aad(subject_id, platform),
            )
            values = dict(
                ciphertext=sealed.ciphertext,
                iv=sealed.iv,
                auth_tag=sealed.auth_tag,
                key_version=sealed.key_version,
                scopes_json=json.dumps(list(granted_scopes)),
                access_expires_at=grant.expires_at,
                refresh_available=bool(refresh_token),
                updated_at=utcnow(),
            )
            if profile is not None:
                values.update(
                    platform_user_id=profile.platform_user_id,
                    username=profile.username,
                    display_name=profile.display_name,
                    avatar_url=profile.avatar_url,
                )

            if row is None:
                row = TokenRecord(subject_id=subject_id, platform=platform, created_at=utcnow(), **values)
                db.add(row)
                try:
                    db.commit()
                except IntegrityError:
                    # a concurrent callback for the same (subject, platform) inserted first
                    db.rollback()
                    db.execute(
                        update(TokenRecord)
                        .where(TokenRecord.subject_id == subject_id, TokenRecord.platform == platform)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    db.commit()
                    row = self._find(db, subject_id, platform)
            else:
                for k, v in values.items():
                    setattr(row, k, v)
                db.commit()

            return summarize(row)

    def touch(self, subject_id: str, platform: str) -> None:
        with self._sessions() as db:
            db.execute(
                update(TokenRecord)
                .where(TokenRecord.subject_id == subject_id, TokenRecord.platform == platform)
                .values(last_used_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            db.commit()

    def delete(self, subject_id: str, platform: str) -> bool:
        """Remove the record. Safe to call multiple times."""
        with self._sessions() as db:
            result = db.execute(
                delete(TokenRecord)
                .where(TokenRecord.subject_id == subject_id, TokenRecord.platform == platform)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return (result.rowcount or 0) > 0
