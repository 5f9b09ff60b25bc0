from tests.oauth_helpers import build_oauth_server


def test_cors_allows_claude_origin() -> None:
    _, client, _, _ = build_oauth_server()

    response = client.get("/authorize", headers={"Origin": "https://claude.ai"})

    assert response.headers["access-control-allow-origin"] == "https://claude.ai"
    assert response.headers["vary"] == "Origin"


def test_cors_blocks_unknown_origin() -> None:
    _, client, _, _ = build_oauth_server()

    response = client.get("/authorize", headers={"Origin": "https://unknown.example"})

    assert "access-control-allow-origin" not in response.headers


def test_cors_allows_configured_origin() -> None:
    _, client, _, _ = build_oauth_server(cors_origins={"https://inspector.example"})

    response = client.get("/callback", headers={"Origin": "https://inspector.example"})

    assert response.status_code == 400
    assert response.headers["access-control-allow-origin"] == "https://inspector.example"


def test_cors_preflight_options() -> None:
    _, client, _, _ = build_oauth_server()

    response = client.options(
        "/authorize",
        headers={
            "Origin": "https://claude.ai",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "Content-Type",
        },
    )

    assert response.status_code == 204
    assert response.headers["access-control-allow-origin"] == "https://claude.ai"
    assert response.headers["access-control-allow-methods"] == "GET, POST, OPTIONS"


def test_cors_preflight_on_link_routes() -> None:
    _, client, _, _ = build_oauth_server(with_secondary=True)

    response = client.options("/microsoft/callback", headers={"Origin": "https://claude.ai"})

    assert response.status_code == 204


def test_callback_preflight_advertises_get_only() -> None:
    _, client, _, _ = build_oauth_server()

    response = client.options("/callback", headers={"Origin": "https://claude.ai"})

    assert response.status_code == 204
    assert response.headers["access-control-allow-methods"] == "GET, OPTIONS"
