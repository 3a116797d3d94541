from .settings import Settings as Settings, get_settings as get_settings
from .env import is_production_env as is_production_env, resolve_env as resolve_env

__all__ = [
    "Settings",
    "get_settings",
    "is_production_env",
    "resolve_env",
]
