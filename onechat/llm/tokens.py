"""Token estimation and context-window truncation.

Counts are a character heuristic (about four characters per token plus a
fixed per-message overhead for role markup).  They are an approximation
with no accuracy guarantee, since one estimate has to serve every
tokenizer family behind the gateway.
"""

import math

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text or "") / CHARS_PER_TOKEN)


def estimate_message_tokens(message: dict) -> int:
    return estimate_tokens(message.get("content") or "") + MESSAGE_OVERHEAD_TOKENS


def estimate_messages_tokens(messages: list[dict]) -> int:
    return sum(estimate_message_tokens(m) for m in messages)


def truncate_messages(
    messages: list[dict], context_window: int, reserved_for_response: int
) -> list[dict]:
    """Drop the oldest non-system messages until the rest fits the window.

    System messages are always kept.  At least one non-system message is
    kept even if it alone overflows.  Relative order inside each group is
    preserved; system messages come first in the result.  The input list
    is not modified.
    """
    available = context_window - reserved_for_response
    if available <= 0:
        return list(messages[-2:])

    if estimate_messages_tokens(messages) <= available:
        return list(messages)

    system = [m for m in messages if m.get("role") == "system"]
    rest = [m for m in messages if m.get("role") != "system"]

    budget = available - estimate_messages_tokens(system)
    rest_tokens = estimate_messages_tokens(rest)
    start = 0
    while len(rest) - start > 1 and rest_tokens > budget:
        rest_tokens -= estimate_message_tokens(rest[start])
        start += 1

    return system + rest[start:]
