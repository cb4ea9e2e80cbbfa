from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from codex_oauth_proxy.settings import Settings
from codex_oauth_proxy.utils.model_utils import normalize_model

ITEM_REFERENCE_TYPE = "item_reference"
ENCRYPTED_REASONING_INCLUDE = "reasoning.encrypted_content"
DEFAULT_REASONING_EFFORT = "medium"
DEFAULT_REASONING_SUMMARY = "auto"
UNSUPPORTED_BODY_FIELDS = frozenset({"max_output_tokens", "max_completion_tokens"})


class InputItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Any = None
    id: Any = None


class ReasoningConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    effort: str | None = None
    summary: str | None = None

    @field_validator("effort", "summary", mode="before")
    @classmethod
    def _drop_non_string(cls, value: Any) -> Any:
        return value if isinstance(value, str) else None


class RequestBody(BaseModel):
    """Responses API request as sent by the Codex CLI.

    Unrecognised keys are kept as extras and re-emitted untouched. Values of
    the wrong shape for a recognised key are treated as absent.
    """

    model_config = ConfigDict(extra="allow")

    model: str | None = None
    stream: bool | None = None
    store: bool | None = None
    instructions: Any = None
    input: Any = None
    reasoning: ReasoningConfig | None = None
    include: list[Any] | None = None
    max_output_tokens: Any = None
    max_completion_tokens: Any = None

    @field_validator("model", mode="before")
    @classmethod
    def _coerce_model(cls, value: Any) -> Any:
        return value if isinstance(value, str) else None

    @field_validator("stream", "store", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> Any:
        return value if isinstance(value, bool) else None

    @field_validator("reasoning", mode="before")
    @classmethod
    def _coerce_reasoning(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else None

    @field_validator("include", mode="before")
    @classmethod
    def _coerce_include(cls, value: Any) -> Any:
        return value if isinstance(value, list) else None


@dataclass(slots=True)
class TransformedRequest:
    body: dict[str, Any]
    was_streaming: bool


def get_backend_url(settings: Settings) -> str:
    return settings.backend_url


def filter_input(items: list[Any]) -> list[Any]:
    """Drop item references and strip ids; the backend keeps no server-side state."""
    filtered: list[Any] = []
    for raw_item in items:
        if not isinstance(raw_item, dict):
            filtered.append(raw_item)
            continue
        item = InputItem.model_validate(raw_item)
        if item.type == ITEM_REFERENCE_TYPE:
            continue
        filtered.append(item.model_dump(exclude_unset=True, exclude={"id"}))
    return filtered


def transform_request_body(payload: dict[str, Any]) -> TransformedRequest:
    body = RequestBody.model_validate(payload)
    was_streaming = body.stream is True

    body.model = normalize_model(body.model)
    body.store = False
    # The backend only streams; non-streaming callers get a folded reply.
    body.stream = True

    if isinstance(body.input, list):
        body.input = filter_input(body.input)

    reasoning = body.reasoning or ReasoningConfig()
    if not reasoning.effort:
        reasoning.effort = DEFAULT_REASONING_EFFORT
    if not reasoning.summary:
        reasoning.summary = DEFAULT_REASONING_SUMMARY
    body.reasoning = reasoning

    include = list(body.include or [])
    if ENCRYPTED_REASONING_INCLUDE not in include:
        include.append(ENCRYPTED_REASONING_INCLUDE)
    body.include = include

    transformed = body.model_dump(
        exclude_unset=True,
        exclude=set(UNSUPPORTED_BODY_FIELDS),
    )
    return TransformedRequest(body=transformed, was_streaming=was_streaming)


def build_headers(access_token: str, account_id: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {access_token}",
        "Content-Type": "application/json",
        "chatgpt-account-id": account_id,
        "OpenAI-Beta": "responses=experimental",
        "originator": "codex_cli_rs",
        "Accept": "text/event-stream",
    }
