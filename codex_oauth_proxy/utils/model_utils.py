from __future__ import annotations

DEFAULT_MODEL = "gpt-5.1"

MODEL_MAP: dict[str, str] = {
    # gpt-5.1 codex
    "gpt-5.1-codex": "gpt-5.1-codex",
    "gpt-5.1-codex-low": "gpt-5.1-codex",
    "gpt-5.1-codex-medium": "gpt-5.1-codex",
    "gpt-5.1-codex-high": "gpt-5.1-codex",
    # gpt-5.1 codex max
    "gpt-5.1-codex-max": "gpt-5.1-codex-max",
    "gpt-5.1-codex-max-low": "gpt-5.1-codex-max",
    "gpt-5.1-codex-max-medium": "gpt-5.1-codex-max",
    "gpt-5.1-codex-max-high": "gpt-5.1-codex-max",
    "gpt-5.1-codex-max-xhigh": "gpt-5.1-codex-max",
    # gpt-5.1 codex mini
    "gpt-5.1-codex-mini": "gpt-5.1-codex-mini",
    "gpt-5.1-codex-mini-medium": "gpt-5.1-codex-mini",
    "gpt-5.1-codex-mini-high": "gpt-5.1-codex-mini",
    # gpt-5.1
    "gpt-5.1": "gpt-5.1",
    "gpt-5.1-none": "gpt-5.1",
    "gpt-5.1-low": "gpt-5.1",
    "gpt-5.1-medium": "gpt-5.1",
    "gpt-5.1-high": "gpt-5.1",
    "gpt-5.1-chat-latest": "gpt-5.1",
    # gpt-5.2
    "gpt-5.2": "gpt-5.2",
    "gpt-5.2-none": "gpt-5.2",
    "gpt-5.2-low": "gpt-5.2",
    "gpt-5.2-medium": "gpt-5.2",
    "gpt-5.2-high": "gpt-5.2",
    "gpt-5.2-xhigh": "gpt-5.2",
    # gpt-5.2 codex
    "gpt-5.2-codex": "gpt-5.2-codex",
    "gpt-5.2-codex-low": "gpt-5.2-codex",
    "gpt-5.2-codex-medium": "gpt-5.2-codex",
    "gpt-5.2-codex-high": "gpt-5.2-codex",
    "gpt-5.2-codex-xhigh": "gpt-5.2-codex",
    # gpt-5.3
    "gpt-5.3": "gpt-5.3",
    "gpt-5.3-none": "gpt-5.3",
    "gpt-5.3-low": "gpt-5.3",
    "gpt-5.3-medium": "gpt-5.3",
    "gpt-5.3-high": "gpt-5.3",
    "gpt-5.3-xhigh": "gpt-5.3",
    # gpt-5.3 codex
    "gpt-5.3-codex": "gpt-5.3-codex",
    "gpt-5.3-codex-low": "gpt-5.3-codex",
    "gpt-5.3-codex-medium": "gpt-5.3-codex",
    "gpt-5.3-codex-high": "gpt-5.3-codex",
    "gpt-5.3-codex-xhigh": "gpt-5.3-codex",
    # Legacy gpt-5 names
    "gpt-5-codex": "gpt-5.1-codex",
    "codex-mini-latest": "gpt-5.1-codex-mini",
    "gpt-5-codex-mini": "gpt-5.1-codex-mini",
    "gpt-5-codex-mini-medium": "gpt-5.1-codex-mini",
    "gpt-5-codex-mini-high": "gpt-5.1-codex-mini",
    "gpt-5": "gpt-5.1",
    "gpt-5-mini": "gpt-5.1",
    "gpt-5-nano": "gpt-5.1",
}

_LOWERCASE_MODEL_MAP: dict[str, str] = {
    key.lower(): value for key, value in MODEL_MAP.items()
}

# Most specific family first; a bare family substring must not shadow its variants.
MODEL_PATTERN_FALLBACKS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("gpt-5.3-codex", "gpt 5.3 codex"), "gpt-5.3-codex"),
    (("gpt-5.3", "gpt 5.3"), "gpt-5.3"),
    (("gpt-5.2-codex", "gpt 5.2 codex"), "gpt-5.2-codex"),
    (("gpt-5.2", "gpt 5.2"), "gpt-5.2"),
    (("gpt-5.1-codex-max", "gpt 5.1 codex max"), "gpt-5.1-codex-max"),
    (("gpt-5.1-codex-mini", "gpt 5.1 codex mini"), "gpt-5.1-codex-mini"),
    (
        ("codex-mini-latest", "gpt-5-codex-mini", "gpt 5 codex mini"),
        "gpt-5.1-codex-mini",
    ),
    (("gpt-5.1-codex", "gpt 5.1 codex"), "gpt-5.1-codex"),
    (("gpt-5.1", "gpt 5.1"), "gpt-5.1"),
)


def strip_provider_prefix(model: str) -> str:
    _, sep, model_id = model.rpartition("/")
    if sep:
        return model_id
    return model


def normalize_model(model: str | None) -> str:
    """Map a client model id onto the canonical ChatGPT backend model name.

    Unknown ids are returned without their provider prefix so the backend
    can reject or accept them itself.
    """
    if not model:
        return DEFAULT_MODEL

    model_id = strip_provider_prefix(model)

    canonical = MODEL_MAP.get(model_id)
    if canonical:
        return canonical

    lower = model_id.lower()
    canonical = _LOWERCASE_MODEL_MAP.get(lower)
    if canonical:
        return canonical

    for needles, family in MODEL_PATTERN_FALLBACKS:
        if any(needle in lower for needle in needles):
            return family

    return model_id
