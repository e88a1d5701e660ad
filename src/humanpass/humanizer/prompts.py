"""Prompt construction and completion cleanup for the rewrite engine."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from humanpass.humanizer.strategies import StrategyHint

_SYSTEM_PROMPT = (
    "Rewrite the following text so it reads as naturally human-written. "
    "Preserve the core meaning and every piece of information."
)

_RULES = (
    "RULES:\n"
    "- Do NOT add new facts or remove existing claims\n"
    "- Keep names, numbers and quotations exactly as written\n"
    "- Output only the rewritten text; no explanations or introductions"
)

# Chat models like to announce their answer; strip the common openers.
_PREAMBLE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^here'?s the (?:humanized|rewritten) (?:version|text)[^:\n]*:?\s*",
        r"^here is the (?:humanized|rewritten) (?:version|text)[^:\n]*:?\s*",
        r"^(?:humanized|rewritten) (?:version|text):?\s*",
        r"^the (?:humanized|rewritten) version is:?\s*",
        r"^(?:certainly|sure)[!.,]?\s*here'?s[^:\n]*:\s*",
    )
)


class PromptBuilder:
    """Assemble the system prompt for a given strategy hint."""

    def build(self, hint: StrategyHint) -> str:
        """Return the system prompt for ``hint``.

        Args:
            hint: Strategy selected for the current attempt.

        Returns:
            System prompt; the text to rewrite is sent as the user message.
        """
        parts = [_SYSTEM_PROMPT]
        if hint.prompt_modifier:
            parts.append(hint.prompt_modifier)
        parts.append(_RULES)
        return "\n\n".join(parts)


def clean_completion(text: str) -> str:
    """Strip conversational preambles and wrapping quotes from a completion."""
    cleaned = text.strip()
    for pattern in _PREAMBLE_PATTERNS:
        cleaned = pattern.sub("", cleaned, count=1).strip()
    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] == '"':
        cleaned = cleaned[1:-1].strip()
    return cleaned
