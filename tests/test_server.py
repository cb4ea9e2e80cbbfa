from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path

import httpx
import pytest

from codex_oauth_proxy.cli import apply_overrides, build_parser
from codex_oauth_proxy.gateway.server import OAuthProxyServer, ProxyOptions
from codex_oauth_proxy.gateway.token_manager import AuthError
from codex_oauth_proxy.settings import Settings
from tests.client_test_utils import make_access_token

TOKEN_URL = "https://auth.openai.com/oauth/token"
DONE_STREAM = 'data: {"type":"response.completed","response":{"id":"r9"}}\n\n'


def test_server_refreshes_eagerly_and_publishes_port(tmp_path: Path) -> None:
    info_path = tmp_path / "server-info.json"
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        if str(request.url) == TOKEN_URL:
            return httpx.Response(
                200,
                json={
                    "access_token": make_access_token("acct_fresh"),
                    "refresh_token": "refresh-2",
                    "expires_in": 3600,
                },
            )
        return httpx.Response(200, content=DONE_STREAM.encode("utf-8"))

    async def scenario() -> tuple[dict, int, int, dict]:
        server = OAuthProxyServer(
            ProxyOptions(
                server_info_file=str(info_path),
                access_token=make_access_token("acct_old", expires_in_seconds=-10),
                refresh_token="refresh-1",
            ),
            settings=Settings(_env_file=None),
        )
        await server.client.aclose()
        server.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        await server.start()
        try:
            assert seen == [TOKEN_URL]
            assert server.token_manager.state.account_id == "acct_fresh"
            info = json.loads(info_path.read_text(encoding="utf-8"))
            async with httpx.AsyncClient(
                base_url=f"http://127.0.0.1:{info['port']}", trust_env=False
            ) as local:
                not_found = await local.get("/v1/responses")
                folded = await local.post("/v1/responses", json={"model": "gpt-5.2"})
        finally:
            await server.stop()
        return info, not_found.status_code, folded.status_code, folded.json()

    info, not_found_status, folded_status, folded_body = asyncio.run(scenario())

    assert info["pid"] == os.getpid()
    assert isinstance(info["port"], int) and info["port"] > 0
    assert not_found_status == 404
    assert folded_status == 200
    assert folded_body == {"id": "r9"}


def test_server_rejects_seed_token_without_account() -> None:
    with pytest.raises(AuthError, match="Failed to initialise OAuth tokens"):
        OAuthProxyServer(
            ProxyOptions(
                server_info_file=None,
                access_token=make_access_token(None),
                refresh_token="r",
            ),
            settings=Settings(_env_file=None),
        )


def test_proxy_options_from_settings_selects_relay_only_when_configured() -> None:
    settings = Settings(
        _env_file=None,
        oauth_access_token="a",
        oauth_refresh_token="r",
        token_relay_url="  ",
        token_relay_key="k",
    )
    assert ProxyOptions.from_settings(settings).relay_url is None

    settings = Settings(
        _env_file=None,
        oauth_access_token="a",
        oauth_refresh_token="",
        token_relay_url="https://relay.example/token",
        token_relay_key="k",
    )
    options = ProxyOptions.from_settings(settings)
    assert options.relay_url == "https://relay.example/token"
    assert options.relay_key == "k"


def test_cli_overrides_settings() -> None:
    args = build_parser().parse_args(
        [
            "--server-info-file",
            "/tmp/info.json",
            "--relay-url",
            "https://relay.example/token",
            "--log-level",
            "debug",
        ]
    )
    settings = apply_overrides(Settings(_env_file=None), args)
    assert settings.server_info_file == "/tmp/info.json"
    assert settings.token_relay_url == "https://relay.example/token"
    assert settings.log_level == "debug"


def test_settings_read_seed_tokens_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OAUTH_ACCESS_TOKEN", "access-from-env")
    monkeypatch.setenv("OAUTH_REFRESH_TOKEN", "refresh-from-env")
    settings = Settings(_env_file=None)
    assert settings.oauth_access_token == "access-from-env"
    assert settings.oauth_refresh_token == "refresh-from-env"
    assert settings.relay_is_configured is False
