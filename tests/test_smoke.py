import server


EXPECTED_EXPORTS = (
    "create_mcp",
    "load_env",
    "load_settings",
    "setup_logging",
    "validate_env",
    "build_http_client",
    "mount_health_route",
    "main",
)


def test_import_server() -> None:
    missing = [name for name in EXPECTED_EXPORTS if not hasattr(server, name)]
    assert missing == []
