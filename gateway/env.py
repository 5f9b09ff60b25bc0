from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from dotenv import load_dotenv

from broker.approval_cookie import DEFAULT_COOKIE_MAX_AGE, DEFAULT_COOKIE_NAME
from broker.errors import ConfigurationError
from broker.upstream import DEFAULT_TIMEOUT_SECONDS

from .constants import AUTH_MODE, LOGGER


def is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_csv_env(key: str) -> set[str]:
    raw = os.getenv(key, "")
    if not raw.strip():
        return set()
    return {item.strip() for item in raw.split(",") if item.strip()}


def _get_env_int(key: str, default: int) -> int:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer value.")


def _get_env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number.")
    if value <= 0:
        raise ConfigurationError(f"{key} must be greater than zero.")
    return value


def _get_env_str(key: str, default: str = "") -> str:
    return os.getenv(key, default).strip()


def load_env() -> None:
    env_path = Path(__file__).resolve().parent.parent / ".env"
    if not env_path.exists():
        return
    load_dotenv(env_path, override=True)


def validate_env() -> None:
    required = (
        "GITHUB_CLIENT_ID",
        "GITHUB_CLIENT_SECRET",
        "COOKIE_ENCRYPTION_KEY",
        "BROKER_PUBLIC_URL",
    )
    missing = [key for key in required if not _get_env_str(key)]
    if missing:
        raise ConfigurationError(
            f"Missing required environment variables for {AUTH_MODE}: {', '.join(missing)}"
        )

    public_url = _get_env_str("BROKER_PUBLIC_URL")
    parsed_public_url = urlparse(public_url)
    if parsed_public_url.scheme != "https" or not parsed_public_url.netloc:
        raise ConfigurationError(
            "BROKER_PUBLIC_URL must be a valid public HTTPS URL (for example: "
            "https://mcp.example.com)."
        )

    has_ms_id = bool(_get_env_str("MS_CLIENT_ID"))
    has_ms_secret = bool(_get_env_str("MS_CLIENT_SECRET"))
    if has_ms_id != has_ms_secret:
        raise ConfigurationError("MS_CLIENT_ID and MS_CLIENT_SECRET must be set together.")

    if _get_env_int("BROKER_COOKIE_MAX_AGE", DEFAULT_COOKIE_MAX_AGE) <= 0:
        raise ConfigurationError("BROKER_COOKIE_MAX_AGE must be greater than zero.")
    if _get_env_int("BROKER_HTTP_MAX_RETRIES", 2) < 0:
        raise ConfigurationError("BROKER_HTTP_MAX_RETRIES must not be negative.")
    _get_env_float("BROKER_HTTP_TIMEOUT", DEFAULT_TIMEOUT_SECONDS)

    clients_file = _get_env_str("BROKER_CLIENTS_FILE")
    if not clients_file:
        LOGGER.warning(
            "BROKER_CLIENTS_FILE is not set; no MCP client can authorize until one is registered."
        )
    elif not Path(clients_file).is_file():
        raise ConfigurationError(f"BROKER_CLIENTS_FILE does not exist: {clients_file}")


def setup_logging() -> bool:
    debug_enabled = is_truthy(os.getenv("BROKER_DEBUG", "1"))
    if debug_enabled:
        logging.basicConfig(level=logging.INFO)
        LOGGER.setLevel(logging.INFO)
    return debug_enabled


@dataclass
class Settings:
    public_url: str
    github_client_id: str
    github_client_secret: str
    cookie_secret: str
    ms_client_id: str = ""
    ms_client_secret: str = ""
    ms_tenant_id: str = "common"
    cookie_name: str = DEFAULT_COOKIE_NAME
    cookie_domain: str | None = None
    cookie_path: str = "/"
    cookie_max_age: int = DEFAULT_COOKIE_MAX_AGE
    http_timeout: float = DEFAULT_TIMEOUT_SECONDS
    http_max_retries: int = 2
    token_store_path: str = ""
    clients_file: str = ""
    allowed_users: set[str] = field(default_factory=set)
    privileged_users: set[str] = field(default_factory=set)
    cors_origins: set[str] = field(default_factory=set)

    @property
    def secondary_enabled(self) -> bool:
        return bool(self.ms_client_id and self.ms_client_secret)


def load_settings() -> Settings:
    """Read the validated environment into one object."""
    return Settings(
        public_url=_get_env_str("BROKER_PUBLIC_URL"),
        github_client_id=_get_env_str("GITHUB_CLIENT_ID"),
        github_client_secret=_get_env_str("GITHUB_CLIENT_SECRET"),
        cookie_secret=_get_env_str("COOKIE_ENCRYPTION_KEY"),
        ms_client_id=_get_env_str("MS_CLIENT_ID"),
        ms_client_secret=_get_env_str("MS_CLIENT_SECRET"),
        ms_tenant_id=_get_env_str("MS_TENANT_ID", "common") or "common",
        cookie_name=_get_env_str("BROKER_COOKIE_NAME", DEFAULT_COOKIE_NAME) or DEFAULT_COOKIE_NAME,
        cookie_domain=_get_env_str("BROKER_COOKIE_DOMAIN") or None,
        cookie_path=_get_env_str("BROKER_COOKIE_PATH", "/") or "/",
        cookie_max_age=_get_env_int("BROKER_COOKIE_MAX_AGE", DEFAULT_COOKIE_MAX_AGE),
        http_timeout=_get_env_float("BROKER_HTTP_TIMEOUT", DEFAULT_TIMEOUT_SECONDS),
        http_max_retries=_get_env_int("BROKER_HTTP_MAX_RETRIES", 2),
        token_store_path=_get_env_str("BROKER_TOKEN_STORE_PATH"),
        clients_file=_get_env_str("BROKER_CLIENTS_FILE"),
        allowed_users=parse_csv_env("BROKER_ALLOWED_USERS"),
        privileged_users=parse_csv_env("BROKER_PRIVILEGED_USERS"),
        cors_origins=parse_csv_env("BROKER_CORS_ORIGINS"),
    )
