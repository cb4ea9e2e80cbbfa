from __future__ import annotations

import json
import logging
from typing import Callable

import httpx
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from codex_oauth_proxy import __version__
from codex_oauth_proxy.gateway.request_transformer import (
    build_headers,
    get_backend_url,
    transform_request_body,
)
from codex_oauth_proxy.gateway.response_adapter import ProxyResponseAdapter
from codex_oauth_proxy.gateway.token_manager import AuthError, TokenManager
from codex_oauth_proxy.settings import Settings

logger = logging.getLogger("uvicorn.error")

RESPONSES_PATH = "/v1/responses"


class RequestBodyTooLarge(ValueError):
    pass


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def _read_body(request: Request, max_bytes: int) -> bytes:
    chunks: list[bytes] = []
    total = 0
    async for chunk in request.stream():
        total += len(chunk)
        if total > max_bytes:
            raise RequestBodyTooLarge(f"request body exceeds {max_bytes} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


def create_app(
    *,
    token_manager: TokenManager,
    client_getter: Callable[[], httpx.AsyncClient],
    settings: Settings,
) -> FastAPI:
    app = FastAPI(
        title="Codex OAuth Proxy",
        description="Local proxy from the Codex CLI to the ChatGPT Codex backend.",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        redirect_slashes=False,
    )
    app.state.token_manager = token_manager
    app.state.settings = settings

    @app.post(RESPONSES_PATH)
    async def responses(request: Request) -> Response:
        try:
            raw_body = await _read_body(request, settings.max_request_body_bytes)
        except RequestBodyTooLarge:
            return _error(
                status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, "Request body too large"
            )

        try:
            payload = json.loads(raw_body)
        except ValueError:
            return _error(status.HTTP_400_BAD_REQUEST, "Invalid JSON body")
        if not isinstance(payload, dict):
            return _error(status.HTTP_400_BAD_REQUEST, "Invalid JSON body")

        try:
            token_state = await token_manager.ensure_valid()
        except AuthError as exc:
            logger.warning("oauth_token_unavailable error=%s", exc)
            return _error(
                status.HTTP_401_UNAUTHORIZED,
                "OAuth token refresh failed. Re-authenticate.",
            )

        transformed = transform_request_body(payload)
        # Token and account id are read in the same step; a refresh replaces both.
        headers = build_headers(token_state.access_token, token_state.account_id)

        backend_url = get_backend_url(settings)
        client = client_getter()
        try:
            upstream_request = client.build_request(
                method="POST",
                url=backend_url,
                json=transformed.body,
                headers=headers,
            )
            upstream = await client.send(upstream_request, stream=True)
        except httpx.RequestError as exc:
            logger.warning(
                "proxy_request_error url=%s error_type=%s error=%s",
                backend_url,
                exc.__class__.__name__,
                exc,
            )
            return _error(
                status.HTTP_502_BAD_GATEWAY, "Failed to reach ChatGPT backend"
            )

        logger.info(
            "proxy_upstream_connected model=%s status=%d stream=%s",
            transformed.body.get("model"),
            upstream.status_code,
            transformed.was_streaming,
        )
        return await ProxyResponseAdapter.to_fastapi_response(
            upstream=upstream,
            was_streaming=transformed.was_streaming,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        _: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        if exc.status_code in {
            status.HTTP_404_NOT_FOUND,
            status.HTTP_405_METHOD_NOT_ALLOWED,
        }:
            return _error(status.HTTP_404_NOT_FOUND, "Not found")
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def internal_error_handler(_: Request, exc: Exception) -> JSONResponse:
        logger.exception("proxy_internal_error error=%s", exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal proxy error")

    return app
