from __future__ import annotations

import json
import time
from typing import Any

from jwt.utils import base64url_decode


class TokenMetadataParser:
    CHATGPT_ACCOUNT_CLAIM_PATH = "https://api.openai.com/auth"

    @staticmethod
    def now_ms() -> int:
        return int(time.time() * 1000)

    @classmethod
    def is_token_expiring(
        cls,
        expires_at_ms: int,
        skew_seconds: int = 60,
        now_ms: int | None = None,
    ) -> bool:
        current = cls.now_ms() if now_ms is None else now_ms
        return expires_at_ms - skew_seconds * 1000 < current

    @staticmethod
    def decode_payload(token: str | None) -> dict[str, Any] | None:
        """Best-effort read of a JWT payload.

        Only the middle segment is decoded; header and signature are ignored.
        """
        if not token:
            return None
        parts = token.split(".")
        if len(parts) != 3:
            return None
        try:
            payload = json.loads(base64url_decode(parts[1]).decode("utf-8"))
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None
        return payload

    @classmethod
    def extract_expires_at_ms(cls, token: str | None) -> int | None:
        payload = cls.decode_payload(token)
        if payload is None:
            return None
        raw_exp = payload.get("exp")
        if isinstance(raw_exp, bool) or not isinstance(raw_exp, (int, float)):
            return None
        if raw_exp <= 0:
            return None
        return int(raw_exp * 1000)

    @classmethod
    def extract_chatgpt_account_id(
        cls,
        token: str | None,
        *,
        claim_path: str | None = None,
    ) -> str | None:
        payload = cls.decode_payload(token)
        if payload is None:
            return None

        claim = payload.get(claim_path or cls.CHATGPT_ACCOUNT_CLAIM_PATH)
        if isinstance(claim, dict):
            account_id = claim.get("chatgpt_account_id")
            if isinstance(account_id, str) and account_id.strip():
                return account_id.strip()
        return None
