import logging
import os
import secrets
from dataclasses import dataclass, field
from typing import Mapping, Optional


_LOGGER = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def _get_str(env: Mapping[str, str], key: str, default: Optional[str] = None) -> Optional[str]:
    value = (env.get(key) or "").strip()
    return value or default


def _get_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = _get_str(env, key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        _LOGGER.warning("Invalid value for %s (%r), using %s", key, raw, default)
        return default


def _get_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = _get_str(env, key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        _LOGGER.warning("Invalid value for %s (%r), using %s", key, raw, default)
        return default


def _get_bool(env: Mapping[str, str], key: str, default: bool = False) -> bool:
    raw = _get_str(env, key)
    if raw is None:
        return default
    return raw.lower() in _TRUTHY


@dataclass
class Settings:
    secret_key: str = field(default_factory=lambda: secrets.token_hex(32), repr=False)
    host: str = "0.0.0.0"
    port: int = 12021
    log_level: str = "INFO"
    demo_mode: bool = False

    dockerhub_username: Optional[str] = None
    dockerhub_token: Optional[str] = field(default=None, repr=False)
    ghcr_token: Optional[str] = field(default=None, repr=False)
    mirror_host: Optional[str] = None
    mirror_username: Optional[str] = None
    mirror_password: Optional[str] = field(default=None, repr=False)

    registry_timeout: float = 10.0
    registry_retries: int = 3
    registry_backoff: float = 0.5
    registry_platform: Optional[str] = None
    registry_max_tag_pages: int = 10

    update_check_interval: int = 300
    compose_timeout: int = 300

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables.

        ``load_dotenv()`` is expected to have run already, so values from a
        ``.env`` file are visible through ``os.environ``.
        """
        env = os.environ if env is None else env

        return cls(
            secret_key=_get_str(env, "DOCKUP_SECRET_KEY") or secrets.token_hex(32),
            host=_get_str(env, "DOCKUP_HOST", "0.0.0.0"),
            port=_get_int(env, "DOCKUP_PORT", 12021),
            log_level=(_get_str(env, "DOCKUP_LOG_LEVEL", "INFO") or "INFO").upper(),
            demo_mode=_get_bool(env, "DOCKUP_DEMO_MODE"),
            dockerhub_username=_get_str(env, "DOCKERHUB_USERNAME"),
            dockerhub_token=_get_str(env, "DOCKERHUB_TOKEN"),
            ghcr_token=_get_str(env, "GHCR_TOKEN"),
            mirror_host=(_get_str(env, "REGISTRY_MIRROR_HOST") or "").lower() or None,
            mirror_username=_get_str(env, "REGISTRY_MIRROR_USERNAME"),
            mirror_password=_get_str(env, "REGISTRY_MIRROR_PASSWORD"),
            registry_timeout=_get_float(env, "REGISTRY_TIMEOUT", 10.0),
            registry_retries=max(0, _get_int(env, "REGISTRY_RETRIES", 3)),
            registry_backoff=max(0.0, _get_float(env, "REGISTRY_BACKOFF", 0.5)),
            registry_platform=_get_str(env, "REGISTRY_PLATFORM"),
            registry_max_tag_pages=max(1, _get_int(env, "REGISTRY_MAX_TAG_PAGES", 10)),
            update_check_interval=max(0, _get_int(env, "UPDATE_CHECK_INTERVAL", 300)),
            compose_timeout=max(1, _get_int(env, "COMPOSE_TIMEOUT", 300)),
        )
