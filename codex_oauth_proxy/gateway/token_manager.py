from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from codex_oauth_proxy.utils.token_utils import TokenMetadataParser

logger = logging.getLogger("uvicorn.error")

DEFAULT_TOKEN_URL = "https://auth.openai.com/oauth/token"
DEFAULT_CLIENT_ID = "app_EMoamEEZ73f0CkXaXp7hrann"
DEFAULT_REFRESH_SKEW_SECONDS = 60


class AuthError(RuntimeError):
    """Raised when no usable access token can be obtained."""


class RelayError(AuthError):
    """Raised when the token relay cannot supply a fresh access token."""


@dataclass(slots=True)
class TokenState:
    access_token: str
    refresh_token: str
    expires_at_ms: int
    account_id: str
    relay_url: str | None = None
    relay_key: str | None = None

    @property
    def relay_mode(self) -> bool:
        return bool(self.relay_url)


@dataclass(slots=True, frozen=True)
class RefreshSuccess:
    access_token: str
    refresh_token: str
    expires_at_ms: int


@dataclass(slots=True, frozen=True)
class RefreshFailure:
    reason: str


RefreshResult = RefreshSuccess | RefreshFailure


def decode_token(token: str | None) -> dict[str, Any] | None:
    return TokenMetadataParser.decode_payload(token)


def derive_account_id(access_token: str) -> str:
    account_id = TokenMetadataParser.extract_chatgpt_account_id(access_token)
    if not account_id:
        raise AuthError("Failed to extract chatgpt_account_id from access token")
    return account_id


def load_token_state(
    access_token: str,
    refresh_token: str,
    relay_url: str | None = None,
    relay_key: str | None = None,
) -> TokenState:
    """Build the initial token state from externally supplied seed tokens.

    A token without an ``exp`` claim is treated as already expired so the
    first request refreshes it.
    """
    expires_at_ms = TokenMetadataParser.extract_expires_at_ms(access_token) or 0
    account_id = derive_account_id(access_token)
    return TokenState(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at_ms=expires_at_ms,
        account_id=account_id,
        relay_url=relay_url or None,
        relay_key=relay_key if relay_url else None,
    )


def needs_refresh(
    state: TokenState,
    *,
    skew_seconds: int = DEFAULT_REFRESH_SKEW_SECONDS,
    now_ms: int | None = None,
) -> bool:
    return TokenMetadataParser.is_token_expiring(
        state.expires_at_ms,
        skew_seconds=skew_seconds,
        now_ms=now_ms,
    )


class TokenManager:
    def __init__(
        self,
        *,
        state: TokenState,
        client_getter: Callable[[], httpx.AsyncClient],
        token_url: str = DEFAULT_TOKEN_URL,
        client_id: str = DEFAULT_CLIENT_ID,
        skew_seconds: int = DEFAULT_REFRESH_SKEW_SECONDS,
    ) -> None:
        self.state = state
        self._client_getter = client_getter
        self._token_url = token_url
        self._client_id = client_id
        self._skew_seconds = skew_seconds
        self._refresh_lock = asyncio.Lock()

    def needs_refresh(self) -> bool:
        return needs_refresh(self.state, skew_seconds=self._skew_seconds)

    async def ensure_valid(self) -> TokenState:
        if not self.needs_refresh():
            return self.state

        async with self._refresh_lock:
            # A concurrent caller may have refreshed while we waited.
            if not self.needs_refresh():
                return self.state

            if self.state.relay_mode:
                return await self.refresh_via_relay()

            logger.info("oauth_refresh_start account=%s", self.state.account_id)
            result = await self.refresh_via_auth_server(self.state.refresh_token)
            if isinstance(result, RefreshFailure):
                raise AuthError(f"Failed to refresh OAuth access token: {result.reason}")

            account_id = derive_account_id(result.access_token)
            self.state.access_token = result.access_token
            self.state.refresh_token = result.refresh_token
            self.state.expires_at_ms = result.expires_at_ms
            self.state.account_id = account_id
            logger.info(
                "oauth_refresh_success account=%s expires_at_ms=%d",
                account_id,
                result.expires_at_ms,
            )
            return self.state

    async def refresh_via_auth_server(self, refresh_token: str) -> RefreshResult:
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self._client_id,
        }
        try:
            response = await self._client_getter().post(
                self._token_url,
                data=payload,
                headers={"Accept": "application/json"},
            )
        except httpx.RequestError as exc:
            logger.warning(
                "oauth_refresh_error reason=request_error error_type=%s error=%s",
                exc.__class__.__name__,
                exc,
            )
            return RefreshFailure("request_error")

        if not response.is_success:
            logger.warning(
                "oauth_refresh_error status=%d body=%s",
                response.status_code,
                response.text[:500],
            )
            return RefreshFailure(f"status_{response.status_code}")

        try:
            body = response.json()
        except ValueError:
            logger.warning("oauth_refresh_error reason=invalid_json")
            return RefreshFailure("invalid_json")

        if not isinstance(body, dict):
            logger.warning("oauth_refresh_error reason=invalid_json")
            return RefreshFailure("invalid_json")

        access_token = body.get("access_token")
        next_refresh = body.get("refresh_token")
        expires_in = body.get("expires_in")
        if (
            not isinstance(access_token, str)
            or not access_token
            or not isinstance(next_refresh, str)
            or not next_refresh
            or isinstance(expires_in, bool)
            or not isinstance(expires_in, (int, float))
        ):
            logger.warning(
                "oauth_refresh_error reason=missing_fields keys=%s",
                ",".join(sorted(body)),
            )
            return RefreshFailure("missing_fields")

        return RefreshSuccess(
            access_token=access_token,
            refresh_token=next_refresh,
            expires_at_ms=TokenMetadataParser.now_ms() + int(expires_in * 1000),
        )

    async def refresh_via_relay(self) -> TokenState:
        state = self.state
        if not state.relay_url:
            raise RelayError("Token relay URL is not configured")

        logger.info("oauth_relay_fetch_start")
        try:
            response = await self._client_getter().get(
                state.relay_url,
                headers={"Authorization": f"Bearer {state.relay_key or ''}"},
            )
        except httpx.RequestError as exc:
            logger.warning(
                "oauth_relay_fetch_error reason=request_error error_type=%s error=%s",
                exc.__class__.__name__,
                exc,
            )
            raise RelayError("Failed to fetch token from relay") from exc

        if not response.is_success:
            logger.warning(
                "oauth_relay_fetch_error status=%d body=%s",
                response.status_code,
                response.text[:500],
            )
            raise RelayError("Failed to fetch token from relay")

        try:
            body = response.json()
        except ValueError as exc:
            raise RelayError("Relay response is not valid JSON") from exc

        access_token = body.get("access_token") if isinstance(body, dict) else None
        expires_at = body.get("expires_at") if isinstance(body, dict) else None
        if (
            not isinstance(access_token, str)
            or not access_token
            or isinstance(expires_at, bool)
            or not isinstance(expires_at, (int, float))
        ):
            raise RelayError("Relay response missing access_token or expires_at")

        try:
            account_id = derive_account_id(access_token)
        except AuthError as exc:
            raise RelayError(str(exc)) from exc

        state.access_token = access_token
        state.expires_at_ms = int(expires_at)
        state.account_id = account_id
        logger.info(
            "oauth_relay_fetch_success account=%s expires_at_ms=%d",
            account_id,
            state.expires_at_ms,
        )
        return state
