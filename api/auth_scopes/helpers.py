from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import os
from typing import Optional, Set

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

from api.config.env import is_production_env

log = logging.getLogger("supplylens.auth")

HASH_ALG = "argon2id"


def _b64url(b: bytes) -> str:
    """Base64url encode bytes, no padding."""
    return base64.urlsafe_b64encode(b).decode("utf-8").rstrip("=")


def _get_key_pepper() -> str:
    pepper = (os.getenv("SL_KEY_PEPPER") or "").strip()
    if pepper:
        return pepper
    if is_production_env():
        raise RuntimeError("SL_KEY_PEPPER is required in production")
    log.warning("SL_KEY_PEPPER not set; using dev default pepper")
    return "dev-unsafe-pepper"


def _key_lookup_hash(secret: str, pepper: str) -> str:
    return hmac.new(
        pepper.encode("utf-8"), secret.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def _argon2_params() -> dict[str, int]:
    # Test runs lower these through the environment; argon2 at 64 MiB per
    # mint is slow under pytest.
    return {
        "time_cost": int(os.getenv("SL_KEY_HASH_TIME_COST", "2")),
        "memory_cost": int(os.getenv("SL_KEY_HASH_MEMORY_KIB", "65536")),
        "parallelism": int(os.getenv("SL_KEY_HASH_PARALLELISM", "1")),
        "hash_len": int(os.getenv("SL_KEY_HASH_HASH_LEN", "32")),
        "salt_len": int(os.getenv("SL_KEY_HASH_SALT_LEN", "16")),
    }


def _argon2_hasher(params: Optional[dict[str, int]] = None) -> PasswordHasher:
    p = params or _argon2_params()
    return PasswordHasher(
        time_cost=p["time_cost"],
        memory_cost=p["memory_cost"],
        parallelism=p["parallelism"],
        hash_len=p["hash_len"],
        salt_len=p["salt_len"],
    )


def hash_key(secret: str) -> tuple[str, str, dict[str, int], str]:
    pepper = _get_key_pepper()
    params = _argon2_params()
    hasher = _argon2_hasher(params)
    hashed = hasher.hash(f"{secret}:{pepper}")
    lookup = _key_lookup_hash(secret, pepper)
    return hashed, HASH_ALG, params, lookup


def verify_key(secret: str, stored_hash: str, hash_alg: Optional[str]) -> bool:
    if hash_alg != HASH_ALG:
        log.warning("unsupported key hash algorithm: %s", hash_alg)
        return False
    try:
        return _argon2_hasher().verify(stored_hash, f"{secret}:{_get_key_pepper()}")
    except VerificationError:
        return False
    except InvalidHashError:
        log.error("stored key hash is malformed")
        return False


def _decode_token_payload(token: str) -> Optional[dict]:
    """Decode base64url-encoded token payload, return None on failure."""
    try:
        padding = 4 - (len(token) % 4)
        if padding != 4:
            token += "=" * padding
        raw = base64.urlsafe_b64decode(token)
        payload = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def _parse_scopes_csv(val) -> Set[str]:
    if not val:
        return set()
    if isinstance(val, (list, tuple, set)):
        return {str(x).strip() for x in val if str(x).strip()}
    s = str(val).strip()
    if not s:
        return set()
    return {x.strip() for x in s.split(",") if x.strip()}
