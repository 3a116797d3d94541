from __future__ import annotations

import os
from dataclasses import dataclass

from api.config.env import _env_bool, resolve_env

DEFAULT_MAX_PAYLOAD_BYTES = 5 * 1024 * 1024
VALID_DATA_MODES = ("LIVE", "SANDBOX")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    env: str
    version: str
    log_level: str
    db_url: str | None
    sqlite_path: str | None
    auth_enabled: bool
    max_payload_bytes: int
    default_data_mode: str

    @classmethod
    def from_env(cls) -> "Settings":
        data_mode = (os.getenv("SL_DEFAULT_DATA_MODE") or "LIVE").strip().upper()
        if data_mode not in VALID_DATA_MODES:
            data_mode = "LIVE"
        return cls(
            env=resolve_env(),
            version=os.getenv("SL_VERSION", "0.4.0"),
            log_level=(os.getenv("SL_LOG_LEVEL") or "INFO").strip().upper(),
            db_url=(os.getenv("SL_DB_URL") or "").strip() or None,
            sqlite_path=(os.getenv("SL_SQLITE_PATH") or "").strip() or None,
            auth_enabled=_env_bool("SL_AUTH_ENABLED", True),
            max_payload_bytes=_env_int(
                "SL_MAX_PAYLOAD_BYTES", DEFAULT_MAX_PAYLOAD_BYTES
            ),
            default_data_mode=data_mode,
        )


def get_settings() -> Settings:
    # Read per call: tests flip env vars between app builds.
    return Settings.from_env()
