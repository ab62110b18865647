"""Runtime configuration for the lecture portal.

A single :class:`Settings` instance is built at process start and handed to
every component; nothing reads ``os.environ`` after that point.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple


LOGGER = logging.getLogger(__name__)


def _int_setting(environ: Mapping[str, str], key: str, default: int, *, minimum: int = 0) -> int:
    raw = environ.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        value = int(str(raw).strip())
    except ValueError:
        LOGGER.warning("Ignoring non-numeric %s=%r; using %s.", key, raw, default)
        return default
    if value < minimum:
        LOGGER.warning("Ignoring %s=%r below minimum %s; using %s.", key, raw, minimum, default)
        return default
    return value


def _float_setting(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        value = float(str(raw).strip())
    except ValueError:
        LOGGER.warning("Ignoring non-numeric %s=%r; using %s.", key, raw, default)
        return default
    if value <= 0:
        LOGGER.warning("Ignoring non-positive %s=%r; using %s.", key, raw, default)
        return default
    return value


@dataclass(frozen=True)
class Settings:
    """Everything the application needs to know about its environment."""

    database_url: str = "mongodb://localhost:27017"
    database_name: str = "lecture_portal"
    secret_key: str = "dev-secret-key-change-me"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 8
    bcrypt_rounds: int = 12
    media_root: Path = Path("media")
    media_base_url: str = "/media"
    media_transfer_timeout: float = 300.0
    fanout_workers: int = 2
    cors_origins: Tuple[str, ...] = field(default_factory=lambda: ("*",))
    log_level: str = "INFO"
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None
    admin_name: str = "Administrator"
    port: int = 8000

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        defaults = cls()

        origins = tuple(
            origin.strip()
            for origin in env.get("CORS_ORIGINS", "*").split(",")
            if origin.strip()
        ) or ("*",)

        return cls(
            database_url=env.get("DATABASE_URL") or defaults.database_url,
            database_name=env.get("DATABASE_NAME") or defaults.database_name,
            secret_key=env.get("SECRET_KEY") or defaults.secret_key,
            jwt_algorithm=env.get("JWT_ALGORITHM") or defaults.jwt_algorithm,
            access_token_expire_minutes=_int_setting(
                env, "ACCESS_TOKEN_EXPIRE_MINUTES", defaults.access_token_expire_minutes, minimum=1
            ),
            # bcrypt refuses fewer than 4 rounds
            bcrypt_rounds=_int_setting(env, "BCRYPT_ROUNDS", defaults.bcrypt_rounds, minimum=4),
            media_root=Path(env.get("MEDIA_ROOT") or defaults.media_root),
            media_base_url=(env.get("MEDIA_BASE_URL") or defaults.media_base_url).rstrip("/"),
            media_transfer_timeout=_float_setting(
                env, "MEDIA_TRANSFER_TIMEOUT", defaults.media_transfer_timeout
            ),
            fanout_workers=_int_setting(env, "FANOUT_WORKERS", defaults.fanout_workers),
            cors_origins=origins,
            log_level=env.get("LOG_LEVEL") or defaults.log_level,
            admin_email=(env.get("ADMIN_EMAIL") or "").strip().lower() or None,
            admin_password=env.get("ADMIN_PASSWORD") or None,
            admin_name=env.get("ADMIN_NAME") or defaults.admin_name,
            port=_int_setting(env, "PORT", defaults.port, minimum=1),
        )


__all__ = ["Settings"]
