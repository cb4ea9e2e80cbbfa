from __future__ import annotations

import asyncio
import json
import logging
import os
import socket
from dataclasses import dataclass
from pathlib import Path

import httpx
import uvicorn
from fastapi import FastAPI

from codex_oauth_proxy.gateway.token_manager import (
    AuthError,
    TokenManager,
    load_token_state,
)
from codex_oauth_proxy.main import create_app
from codex_oauth_proxy.settings import Settings, get_settings

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class ProxyOptions:
    server_info_file: str | None
    access_token: str
    refresh_token: str
    relay_url: str | None = None
    relay_key: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> ProxyOptions:
        return cls(
            server_info_file=settings.server_info_file,
            access_token=settings.oauth_access_token,
            refresh_token=settings.oauth_refresh_token,
            relay_url=settings.token_relay_url if settings.relay_is_configured else None,
            relay_key=settings.token_relay_key,
        )


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=None,
            connect=max(0.1, settings.backend_connect_timeout_seconds),
            read=max(0.1, settings.backend_read_timeout_seconds),
            write=max(0.1, settings.backend_write_timeout_seconds),
            pool=max(0.1, settings.backend_pool_timeout_seconds),
        ),
    )


class OAuthProxyServer:
    """Owns the listening socket, the HTTP client and the shared token state."""

    def __init__(
        self,
        options: ProxyOptions,
        *,
        settings: Settings | None = None,
    ) -> None:
        self.options = options
        self.settings = settings or get_settings()
        try:
            state = load_token_state(
                options.access_token,
                options.refresh_token,
                relay_url=options.relay_url,
                relay_key=options.relay_key,
            )
        except AuthError as exc:
            raise AuthError(f"Failed to initialise OAuth tokens: {exc}") from exc

        self.client = build_http_client(self.settings)
        self.token_manager = TokenManager(
            state=state,
            client_getter=lambda: self.client,
            token_url=self.settings.oauth_token_url,
            client_id=self.settings.oauth_client_id,
            skew_seconds=self.settings.token_refresh_skew_seconds,
        )
        self.app: FastAPI = create_app(
            token_manager=self.token_manager,
            client_getter=lambda: self.client,
            settings=self.settings,
        )
        self.port: int | None = None
        self._server: uvicorn.Server | None = None
        self._serve_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        await self.token_manager.ensure_valid()

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((self.settings.listen_host, 0))
        self.port = sock.getsockname()[1]

        config = uvicorn.Config(
            self.app,
            log_config=None,
            access_log=False,
            lifespan="off",
        )
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._server.serve(sockets=[sock]))
        while not self._server.started:
            if self._serve_task.done():
                await self._serve_task
                raise RuntimeError("Failed to bind proxy server")
            await asyncio.sleep(0.01)

        logger.info("proxy_listening host=%s port=%d", self.settings.listen_host, self.port)
        if self.options.server_info_file:
            await asyncio.to_thread(
                self.write_server_info,
                Path(self.options.server_info_file),
                self.port,
            )
            logger.info("proxy_server_info_written path=%s", self.options.server_info_file)

    async def wait_closed(self) -> None:
        if self._serve_task is not None:
            await self._serve_task

    async def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._serve_task is not None:
            await self._serve_task
            self._serve_task = None
        self._server = None
        await self.client.aclose()
        logger.info("proxy_stopped")

    @staticmethod
    def write_server_info(path: Path, port: int) -> None:
        path.write_text(json.dumps({"port": port, "pid": os.getpid()}), encoding="utf-8")
