from __future__ import annotations

import json
import logging
import re
from typing import Any, AsyncIterator

import httpx
from fastapi import status
from fastapi.responses import JSONResponse, Response, StreamingResponse

logger = logging.getLogger("uvicorn.error")

SSE_DATA_PREFIX = "data: "
TERMINAL_EVENT_TYPES = frozenset({"response.done", "response.completed"})
USAGE_LIMIT_PATTERN = re.compile(
    r"usage_limit_reached|usage_not_included|rate_limit_exceeded|usage limit"
)
EVENT_STREAM_MEDIA_TYPE = "text/event-stream; charset=utf-8"
JSON_MEDIA_TYPE = "application/json"


def is_usage_limit_body(body: str) -> bool:
    return USAGE_LIMIT_PATTERN.search(body.lower()) is not None


def extract_final_response(sse_text: str) -> tuple[bool, Any]:
    """Find the payload of the first terminal ``response.*`` event.

    A terminal event without a ``response`` object counts as not found, so the
    caller falls back to the raw stream text.
    """
    for line in sse_text.split("\n"):
        if not line.startswith(SSE_DATA_PREFIX):
            continue
        try:
            event = json.loads(line[len(SSE_DATA_PREFIX) :])
        except ValueError:
            continue
        if isinstance(event, dict) and event.get("type") in TERMINAL_EVENT_TYPES:
            final_response = event.get("response")
            if final_response is None:
                return False, None
            return True, final_response
    return False, None


async def _read_text(upstream: httpx.Response) -> str:
    try:
        await upstream.aread()
        return upstream.text
    except (httpx.HTTPError, httpx.StreamError) as exc:
        logger.warning(
            "proxy_upstream_read_error status=%d error=%s", upstream.status_code, exc
        )
        return ""
    finally:
        await upstream.aclose()


class ProxyResponseAdapter:
    @staticmethod
    async def to_fastapi_response(
        *,
        upstream: httpx.Response,
        was_streaming: bool,
    ) -> Response:
        if upstream.status_code == status.HTTP_404_NOT_FOUND:
            body = await _read_text(upstream)
            status_code = (
                status.HTTP_429_TOO_MANY_REQUESTS
                if is_usage_limit_body(body)
                else status.HTTP_404_NOT_FOUND
            )
            if status_code == status.HTTP_429_TOO_MANY_REQUESTS:
                logger.warning("proxy_usage_limit_remapped status=404->429")
            return Response(
                content=body, status_code=status_code, media_type=JSON_MEDIA_TYPE
            )

        if not upstream.is_success:
            body = await _read_text(upstream)
            logger.warning("proxy_upstream_error status=%d", upstream.status_code)
            return Response(
                content=body,
                status_code=upstream.status_code,
                media_type=JSON_MEDIA_TYPE,
            )

        if was_streaming:
            return ProxyResponseAdapter.passthrough_stream(upstream)
        return await ProxyResponseAdapter.fold_stream_to_json(upstream)

    @staticmethod
    def passthrough_stream(upstream: httpx.Response) -> StreamingResponse:
        async def stream_generator() -> AsyncIterator[bytes]:
            try:
                async for chunk in upstream.aiter_bytes():
                    yield chunk
            except (httpx.HTTPError, httpx.StreamError) as exc:
                logger.warning("proxy_upstream_stream_error error=%s", exc)
            finally:
                await upstream.aclose()

        return StreamingResponse(
            content=stream_generator(),
            status_code=status.HTTP_200_OK,
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
            media_type=EVENT_STREAM_MEDIA_TYPE,
        )

    @staticmethod
    async def fold_stream_to_json(upstream: httpx.Response) -> Response:
        chunks: list[str] = []
        received_bytes = False
        read_failed = False
        try:
            async for text in upstream.aiter_text():
                received_bytes = received_bytes or bool(text)
                chunks.append(text)
        except (httpx.HTTPError, httpx.StreamError) as exc:
            read_failed = True
            logger.warning("proxy_upstream_stream_error mode=buffered error=%s", exc)
        finally:
            await upstream.aclose()

        full_text = "".join(chunks)
        if not received_bytes:
            error = (
                "Failed to read upstream response"
                if read_failed
                else "No response body from upstream"
            )
            return JSONResponse(
                status_code=status.HTTP_502_BAD_GATEWAY,
                content={"error": error},
            )

        found, final_response = extract_final_response(full_text)
        if found:
            return JSONResponse(status_code=status.HTTP_200_OK, content=final_response)

        logger.error(
            "proxy_sse_terminal_event_missing bytes=%d truncated=%s",
            len(full_text),
            read_failed,
        )
        return Response(
            content=full_text,
            status_code=status.HTTP_200_OK,
            media_type=EVENT_STREAM_MEDIA_TYPE,
        )
