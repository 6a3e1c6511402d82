# oauth_vault/core/logging.py
from __future__ import annotations

import json
import logging
import os
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# ---- Request-ID context ------------------------------------------------------
_request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")

def set_request_id(value: str) -> None:
    _request_id_ctx.set(value)

def get_request_id() -> str:
    return _request_id_ctx.get()

def mask(secret: Optional[str], keep: int = 8) -> str:
    """Log-safe prefix of an opaque secret (state ids, codes)."""
    if not secret:
        return "-"
    return f"{secret[:keep]}..." if len(secret) > keep else "***"

class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        return True

# ---- JSON formatter ----------------------------------------------------------
_RESERVED = ("args", "msg", "exc_info", "exc_text", "stack_info", "pathname",
             "lineno", "levelname", "name", "created")

class JsonFormatter(logging.Formatter):
    def _ts(self, record: logging.LogRecord) -> str:
        return datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="seconds")

    def format(self, record: logging.LogRecord) -> str:
        try:
            base = {
                "ts": self._ts(record),
                "lvl": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "request_id": getattr(record, "request_id", "-"),
                "file": record.pathname,
                "line": record.lineno,
            }
            # serializable extras only
            for k, v in list(record.__dict__.items()):
                if k in _RESERVED or k in base:
                    continue
                try:
                    json.dumps({k: v})
                except (TypeError, ValueError):
                    continue
                base[k] = v
            if record.exc_info:
                base["exc"] = self.formatException(record.exc_info)
            return json.dumps(base, ensure_ascii=False)
        except Exception as e:  # never crash logging
            return json.dumps({"ts": self._ts(record), "lvl": "ERROR", "logger": "logging",
                               "msg": f"formatting-error: {e!r}"}, ensure_ascii=False)

# ---- Setup -------------------------------------------------------------------
def _rotating_handler(path: Path) -> RotatingFileHandler:
    max_bytes = int(os.getenv("LOG_MAX_BYTES", "1048576"))  # 1 MiB
    backups = int(os.getenv("LOG_BACKUPS", "7"))
    return RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backups, encoding="utf-8")

def setup_logging(log_dir: Optional[str] = None) -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    directory = Path(log_dir or os.getenv("LOG_DIR", "logs"))
    directory.mkdir(parents=True, exist_ok=True)

    file_handler = _rotating_handler(directory / "app.log")
    console_handler = logging.StreamHandler()

    jf = JsonFormatter()
    rid_filter = RequestIdFilter()
    for h in (file_handler, console_handler):
        h.setFormatter(jf)
        h.addFilter(rid_filter)

    root = logging.getLogger()
    root.setLevel(level)

    # Reset handlers to avoid double-logging
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    logging.getLogger("uvicorn").setLevel(level)
    logging.getLogger("uvicorn.error").setLevel(level)
    logging.getLogger("uvicorn.access").setLevel(level)
    logging.getLogger("fastapi").setLevel(level)
    # httpx logs full request URLs at INFO, which include authorization codes
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

def audit_fallback_logger(log_dir: Optional[str] = None) -> logging.Logger:
    """
    Dedicated JSON-lines sink for audit events that could not be stored.
    Does not propagate to the root logger so events are written exactly once.
    """
    logger = logging.getLogger("oauth_vault.audit.fallback")
    if logger.handlers:
        return logger
    directory = Path(log_dir or os.getenv("LOG_DIR", "logs"))
    directory.mkdir(parents=True, exist_ok=True)
    handler = _rotating_handler(directory / "audit-fallback.log")
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestIdFilter())
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger
