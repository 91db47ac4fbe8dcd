"""CBS macro processing: {{char}}, {{user}}, {{random:...}}, {{pick:...}} etc.

Macros are resolved by a fixed sequence of regex passes. The order matters:
markers that must never reach the model (hidden keys, comments) are removed
first, and name substitution runs before the list macros so that
`{{random:{{char}},{{user}}}}`-style nesting is not required to work.

Malformed macros are left in the text unchanged. `process()` never raises.
"""

from __future__ import annotations

import logging
import random
import re
from collections.abc import Callable

from chara_prompt.models import MacroContext

logger = logging.getLogger(__name__)

_HIDDEN_KEY_RE = re.compile(r"\{\{hidden_key:([^}]+)\}\}")
_BLOCK_COMMENT_RE = re.compile(r"\{\{//[^}]*\}\}")
_INLINE_COMMENT_RE = re.compile(r"\{\{comment:\s*[^}]*\}\}")
_CHAR_RE = re.compile(r"\{\{char\}\}", re.IGNORECASE)
_USER_RE = re.compile(r"\{\{user\}\}", re.IGNORECASE)
_RANDOM_RE = re.compile(r"\{\{random:([^}]+)\}\}")
_PICK_RE = re.compile(r"\{\{pick:([^}]+)\}\}")
_ROLL_RE = re.compile(r"\{\{roll:d?(\d+)\}\}")
_REVERSE_RE = re.compile(r"\{\{reverse:([^}]+)\}\}")

_COMMA_SENTINEL = "\x00"


def split_choices(text: str) -> list[str]:
    """Split a macro argument on commas, keeping an escaped comma literal."""
    escaped = text.replace("\\,", _COMMA_SENTINEL)
    return [part.strip().replace(_COMMA_SENTINEL, ",") for part in escaped.split(",")]


def string_hash(text: str) -> int:
    """32-bit rolling hash (h = h*31 + code unit) with signed overflow.

    Iterates UTF-16 code units so the result is stable for text outside
    the BMP as well.
    """
    h = 0
    data = text.encode("utf-16-le")
    for i in range(0, len(data), 2):
        h = (h * 31 + int.from_bytes(data[i:i + 2], "little")) & 0xFFFFFFFF
    return h - 0x100000000 if h & 0x80000000 else h


class MacroProcessor:
    """Stateless text transformer for CBS macros.

    Args:
        rng: Source for {{random}} and {{roll}}. Defaults to a fresh
             `random.Random`; pass a seeded one for reproducible output.
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def process(self, text: str, context: MacroContext) -> str:
        result = self.strip_markers(text)

        result = _sub(_CHAR_RE, lambda m: context.char_name, result)
        result = _sub(_USER_RE, lambda m: context.user_name, result)
        result = _sub(_RANDOM_RE, self._random, result)
        seed = context.conversation_id or ""
        result = _sub(_PICK_RE, lambda m: _pick(m, seed), result)
        result = _sub(_ROLL_RE, self._roll, result)
        result = _sub(_REVERSE_RE, lambda m: m.group(1)[::-1], result)
        return result

    def strip_markers(self, text: str) -> str:
        """Remove hidden keys and comments only, leaving other macros as written."""
        result = _HIDDEN_KEY_RE.sub("", text)
        result = _BLOCK_COMMENT_RE.sub("", result)
        return _INLINE_COMMENT_RE.sub("", result)

    def extract_hidden_keys(self, text: str) -> list[str]:
        """Return the contents of {{hidden_key:...}} markers, in order."""
        return _HIDDEN_KEY_RE.findall(text)

    def _random(self, match: re.Match) -> str:
        choices = split_choices(match.group(1))
        return self._rng.choice(choices)

    def _roll(self, match: re.Match) -> str:
        sides = int(match.group(1))
        if sides < 1:
            return match.group(0)
        return str(self._rng.randint(1, sides))


def _pick(match: re.Match, seed: str) -> str:
    choices = split_choices(match.group(1))
    return choices[abs(string_hash(seed + match.group(0))) % len(choices)]


def _sub(pattern: re.Pattern, replace: Callable[[re.Match], str], text: str) -> str:
    """re.sub that leaves an occurrence as written if its replacement fails."""

    def _safe(match: re.Match) -> str:
        try:
            return replace(match)
        except Exception as e:
            logger.warning("Macro %r left unreplaced: %s", match.group(0), e)
            return match.group(0)

    return pattern.sub(_safe, text)
