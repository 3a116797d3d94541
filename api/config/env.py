from __future__ import annotations

import os

VALID_SL_ENVS = {"dev", "test", "staging", "prod", "production"}


def _env_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip().lower() in {"1", "true", "yes", "y", "on"}


def is_strict_env_required() -> bool:
    return _env_bool("SL_REQUIRE_STRICT_ENV", False)


def sl_env(*, require_explicit: bool = False) -> str:
    raw = os.getenv("SL_ENV")
    if raw is None or not str(raw).strip():
        if require_explicit:
            raise RuntimeError(
                "SL_ENV must be set to one of: dev, test, staging, prod."
            )
        return "dev"

    env = str(raw).strip().lower()
    if env not in VALID_SL_ENVS:
        raise RuntimeError("SL_ENV must be set to one of: dev, test, staging, prod.")

    return "prod" if env == "production" else env


def resolve_env() -> str:
    return sl_env(require_explicit=is_strict_env_required())


def is_production_env() -> bool:
    return resolve_env() in {"prod", "staging"}
