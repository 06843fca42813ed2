from __future__ import annotations

import logging
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    db_path: str | None = None
    message_page_size: int = 50
    admin_fail_open: bool = True
    admin_verify_timeout_ms: int = 5000
    admin_redirect_delay_ms: int = 1500
    allow_rerequest_after_decline: bool = False
    session_ttl_s: int = 3600
    session_secret: str | None = None
    log_level: str = "INFO"

    @property
    def admin_verify_timeout_s(self) -> float:
        return self.admin_verify_timeout_ms / 1000

    @property
    def admin_redirect_delay_s(self) -> float:
        return self.admin_redirect_delay_ms / 1000

    @property
    def session_ttl_ms(self) -> int:
        return self.session_ttl_s * 1000


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_bool01(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    if raw not in {"0", "1"}:
        raise ValueError(f"{name} must be 0 or 1")
    return raw == "1"


def _parse_log_level(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    level = raw.upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ValueError(f"{name} must be a logging level name")
    return level


def load_settings_from_env() -> Settings:
    db_path = os.environ.get("ALUMNODE_DB_PATH") or None
    page_size = _parse_non_negative_int("ALUMNODE_MESSAGE_PAGE_SIZE", 50)
    if page_size == 0:
        raise ValueError("ALUMNODE_MESSAGE_PAGE_SIZE must be positive")
    return Settings(
        db_path=db_path,
        message_page_size=page_size,
        admin_fail_open=_parse_bool01("ALUMNODE_ADMIN_FAIL_OPEN", True),
        admin_verify_timeout_ms=_parse_non_negative_int("ALUMNODE_ADMIN_VERIFY_TIMEOUT_MS", 5000),
        admin_redirect_delay_ms=_parse_non_negative_int("ALUMNODE_ADMIN_REDIRECT_DELAY_MS", 1500),
        allow_rerequest_after_decline=_parse_bool01("ALUMNODE_ALLOW_REREQUEST", False),
        session_ttl_s=max(1, _parse_non_negative_int("ALUMNODE_SESSION_TTL_S", 3600)),
        session_secret=os.environ.get("ALUMNODE_SESSION_SECRET") or None,
        log_level=_parse_log_level("ALUMNODE_LOG_LEVEL", "INFO"),
    )
