import json
import math
from typing import Any


CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Rough token estimate, about four characters per token"""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def render_payload(payload: Any) -> str:
    """Render an arbitrary tool payload as prompt text"""
    if payload is None:
        return "null"
    if isinstance(payload, str):
        return payload
    try:
        return json.dumps(payload, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(payload)


def estimate_payload_tokens(payload: Any) -> int:
    """Token estimate for a structured payload, never below one"""
    return max(1, estimate_tokens(render_payload(payload)))
