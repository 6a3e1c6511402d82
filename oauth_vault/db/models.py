from __future__ import annotations
from datetime import datetime
from sqlalchemy import (
    Boolean, DateTime, Index, Integer, LargeBinary, PrimaryKeyConstraint, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from oauth_vault.core.clock import utcnow
from .session import Base


class OAuthState(Base):
    """One-time authorization ticket issued at initiate, consumed at callback."""
    __tablename__ = "oauth_states"

    state_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)

    # raw PKCE verifier; never leaves the server
    pkce_verifier: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    consumed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("ix_oauthstate_expires", "expires_at"),
    )


class TokenRecord(Base):
    """Token vault entry. Only ciphertext lives here."""
    __tablename__ = "token_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)

    ciphertext: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    iv: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    auth_tag: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    key_version: Mapped[int] = mapped_column(Integer, nullable=False)

    scopes_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")  # list as JSON text
    access_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refresh_available: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # connected account identity as reported by the platform
    platform_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("subject_id", "platform", name="uq_tokenrecord_subject_platform"),
    )


class AuditEvent(Base):
    """Append-only audit trail. Rows are only removed by the retention purge."""
    __tablename__ = "audit_events"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False)
    organization_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)

    action: Mapped[str] = mapped_column(String(16), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)

    caller_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    caller_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_auditevent_ts", "timestamp", "id"),
        Index("ix_auditevent_subject", "subject_id", "timestamp"),
    )


class RateLimitCounter(Base):
    __tablename__ = "rate_limit_counters"

    caller: Mapped[str] = mapped_column(String(255), nullable=False)
    endpoint_class: Mapped[str] = mapped_column(String(32), nullable=False)
    window_start: Mapped[int] = mapped_column(Integer, nullable=False)  # epoch seconds
    window_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        PrimaryKeyConstraint("caller", "endpoint_class", "window_start", name="pk_ratelimit_counter"),
    )
