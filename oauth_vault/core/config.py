from __future__ import annotations

from enum import Enum
from typing import Annotated, Dict, List, Optional, Tuple

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Environment(str, Enum):
    PRODUCTION = "production"
    DEVELOPMENT = "development"
    TEST = "test"


# endpoint class -> {"max": requests per window, "window_seconds": window length}
DEFAULT_RATE_LIMITS: Dict[str, Dict[str, int]] = {
    "initiate": {"max": 50, "window_seconds": 15 * 60},
    "callback": {"max": 10, "window_seconds": 5 * 60},
    "refresh": {"max": 20, "window_seconds": 10 * 60},
    "revoke": {"max": 20, "window_seconds": 10 * 60},
}

SUPPORTED_PLATFORMS = ("twitter", "linkedin", "facebook", "instagram", "google")


class Settings(BaseSettings):
    # Resolved once at startup; nothing downstream sniffs credential strings.
    ENVIRONMENT: Environment = Environment.DEVELOPMENT
    LOG_DIR: str = "logs"
    DATABASE_URL: str = ""

    API_INTERNAL_KEY: str = ""
    INTERNAL_ALLOWED_IPS: Annotated[List[str], NoDecode] = []
    # peers whose X-Forwarded-For is believed; empty means the header is ignored
    TRUSTED_PROXIES: Annotated[List[str], NoDecode] = []

    # urlsafe base64 of exactly 32 bytes; no default
    ENCRYPTION_KEY: str = ""
    ENCRYPTION_KEY_VERSION: int = 1
    ENCRYPTION_PREVIOUS_KEYS: Dict[int, str] = {}

    STATE_TTL_SECONDS: int = 600
    TOKEN_EXCHANGE_TIMEOUT_SECONDS: float = 10.0
    TOKEN_EXCHANGE_MAX_ATTEMPTS: int = 2

    RATE_LIMITS: Dict[str, Dict[str, int]] = {}

    # exact-match allow-list of redirect URIs registered with the platforms
    ALLOWED_REDIRECT_URIS: Annotated[List[str], NoDecode] = []
    ALLOW_WILDCARD_REDIRECTS: bool = False

    AUDIT_RETENTION_DAYS: int = 30

    TWITTER_CLIENT_ID: str = ""
    TWITTER_CLIENT_SECRET: str = ""
    TWITTER_REDIRECT_URI: str = ""

    LINKEDIN_CLIENT_ID: str = ""
    LINKEDIN_CLIENT_SECRET: str = ""
    LINKEDIN_REDIRECT_URI: str = ""

    FACEBOOK_CLIENT_ID: str = ""
    FACEBOOK_CLIENT_SECRET: str = ""
    FACEBOOK_REDIRECT_URI: str = ""

    INSTAGRAM_CLIENT_ID: str = ""
    INSTAGRAM_CLIENT_SECRET: str = ""
    INSTAGRAM_REDIRECT_URI: str = ""

    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_REDIRECT_URI: str = ""

    CORS_ORIGINS: Annotated[List[str], NoDecode] = []

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("INTERNAL_ALLOWED_IPS", "TRUSTED_PROXIES", "ALLOWED_REDIRECT_URIS", "CORS_ORIGINS", mode="before")
    @classmethod
    def split_csv(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT is Environment.PRODUCTION

    def rate_limit_rules(self) -> Dict[str, Tuple[int, int]]:
        """Per endpoint class (max_requests, window_seconds), defaults overlaid with RATE_LIMITS."""
        rules: Dict[str, Tuple[int, int]] = {}
        for name, rule in {**DEFAULT_RATE_LIMITS, **self.RATE_LIMITS}.items():
            base = DEFAULT_RATE_LIMITS.get(name, {})
            rules[name] = (
                int(rule.get("max", base.get("max", 0))),
                int(rule.get("window_seconds", base.get("window_seconds", 60))),
            )
        return rules

    def platform_credentials(self, platform: str) -> Tuple[str, str, str]:
        """(client_id, client_secret, redirect_uri) for a platform; empty strings when unset."""
        prefix = platform.upper()
        return (
            getattr(self, f"{prefix}_CLIENT_ID", "") or "",
            getattr(self, f"{prefix}_CLIENT_SECRET", "") or "",
            getattr(self, f"{prefix}_REDIRECT_URI", "") or "",
        )

    def redirect_uri_allowed(self, redirect_uri: str) -> bool:
        if not redirect_uri:
            return False
        for allowed in self.ALLOWED_REDIRECT_URIS:
            if allowed == redirect_uri:
                return True
            if "*" in allowed and self.ALLOW_WILDCARD_REDIRECTS and not self.is_production:
                head, _, tail = allowed.partition("*")
                if redirect_uri.startswith(head) and redirect_uri.endswith(tail):
                    return True
        return False


def validate_platform_config(cfg: Settings, platforms: Optional[List[str]] = None) -> List[str]:
    """
    Report configuration problems per platform. Platforms with no credentials at all are
    simply not enabled; half-configured ones and, in production, unsafe redirect URIs are errors.
    """
    errors: List[str] = []
    for platform in platforms or list(SUPPORTED_PLATFORMS):
        client_id, client_secret, redirect_uri = cfg.platform_credentials(platform)
        if not (client_id or client_secret or redirect_uri):
            continue
        prefix = platform.upper()
        missing = [
            name
            for name, value in (
                (f"{prefix}_CLIENT_ID", client_id),
                (f"{prefix}_CLIENT_SECRET", client_secret),
                (f"{prefix}_REDIRECT_URI", redirect_uri),
            )
            if not value
        ]
        if missing:
            errors.append(f"{platform}: missing {', '.join(missing)}")
            continue
        if not cfg.redirect_uri_allowed(redirect_uri):
            errors.append(f"{platform}: redirect URI is not in ALLOWED_REDIRECT_URIS")
        if cfg.is_production and not redirect_uri.startswith("https://"):
            errors.append(f"{platform}: redirect URI must use https in production")
    return errors


settings = Settings()

