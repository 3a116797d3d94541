from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

_PROD_ENVS = {"prod", "production", "staging"}
_TRUE = {"1", "true", "yes", "y", "on"}


@dataclass
class ProdInvariantViolation(RuntimeError):
    code: str
    message: str

    def __str__(self) -> str:
        return f"{self.code}:{self.message}"


def _env_bool(env: Mapping[str, str], key: str, default: bool = False) -> bool:
    raw = env.get(key)
    if raw is None:
        return default
    return str(raw).strip().lower() in _TRUE


def assert_prod_invariants(settings: Mapping[str, str] | None = None) -> None:
    env = settings if settings is not None else os.environ
    sl_env = (env.get("SL_ENV") or "dev").strip().lower()
    if sl_env not in _PROD_ENVS:
        return

    if not _env_bool(env, "SL_AUTH_ENABLED", True):
        raise ProdInvariantViolation(
            "SL-PROD-001", "SL_AUTH_ENABLED must be true in prod/staging"
        )

    db_url = (env.get("SL_DB_URL") or "").strip()
    if not db_url:
        raise ProdInvariantViolation(
            "SL-PROD-002", "SL_DB_URL is required in prod/staging"
        )
    if db_url.lower().startswith("sqlite"):
        raise ProdInvariantViolation(
            "SL-PROD-003", "sqlite SL_DB_URL is forbidden in prod/staging"
        )

    if not (env.get("SL_KEY_PEPPER") or "").strip():
        raise ProdInvariantViolation(
            "SL-PROD-004", "SL_KEY_PEPPER is required in prod/staging"
        )
