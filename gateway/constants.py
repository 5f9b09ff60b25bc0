from __future__ import annotations

import logging

LOGGER = logging.getLogger("mcp_auth_broker")
APP_VERSION = "0.1.0"
AUTH_MODE = "delegated-oauth"

IDEMPOTENT_METHODS = {"GET", "HEAD"}
