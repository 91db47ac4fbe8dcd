"""Lorebook keyword matching with @@decorator modifiers.

An entry's content may embed decorators that change how and when it
activates:

  @@depth N                 insertion depth hint (carried, not interpreted)
  @@role system|user|assistant
                            role of the emitted prompt message
  @@activate_only_after N   needs at least N assistant turns
  @@activate_only_every N   only on turns where the assistant count % N == 0
  @@position X              insertion position hint (carried, not interpreted)
  @@scan_depth N            scan only the last N messages
  @@additional_keys [a,b]   extra primary keys (repeatable)
  @@exclude_keys [a,b]      any match rejects the entry (repeatable)
  @@activate                activate without a key match
  @@dont_activate           never activate

Decorators are stripped from the content before it is used. Parsing is a pure
function of the content string and is memoised, so re-scanning the same
lorebook every turn does not re-run the decorator regexes.

Matching rules, per enabled entry:
  constant   → candidate regardless of scan text
  otherwise  → exclude keys reject; selective entries need a primary AND a
               secondary key; other entries need any primary or additional key
Then decorator conditions (dont_activate, activate_only_after/every) apply to
every candidate, constant or not. Results are ordered by priority descending,
then insertion_order ascending.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache

from pydantic import BaseModel, Field

from chara_prompt.models import LoreEntry, Lorebook, MatchedEntry, Message, ParsedDecorators, Role

logger = logging.getLogger(__name__)

_DEPTH_RE = re.compile(r"@@depth\s+(\d+)")
_DEPTH_STRIP_RE = re.compile(r"@@depth\s+\d+\s*")
_ROLE_RE = re.compile(r"@@role\s+(assistant|system|user)")
_ROLE_STRIP_RE = re.compile(r"@@role\s+(?:assistant|system|user)\s*")
_AFTER_RE = re.compile(r"@@activate_only_after\s+(\d+)")
_AFTER_STRIP_RE = re.compile(r"@@activate_only_after\s+\d+\s*")
_EVERY_RE = re.compile(r"@@activate_only_every\s+(\d+)")
_EVERY_STRIP_RE = re.compile(r"@@activate_only_every\s+\d+\s*")
_POSITION_RE = re.compile(r"@@position\s+(\S+)")
_POSITION_STRIP_RE = re.compile(r"@@position\s+\S+\s*")
_SCAN_DEPTH_RE = re.compile(r"@@scan_depth\s+(\d+)")
_SCAN_DEPTH_STRIP_RE = re.compile(r"@@scan_depth\s+\d+\s*")
_ADDITIONAL_KEYS_RE = re.compile(r"@@additional_keys\s+\[([^\]]*)\]")
_EXCLUDE_KEYS_RE = re.compile(r"@@exclude_keys\s+\[([^\]]*)\]")
_ACTIVATE_RE = re.compile(r"@@activate(?!\w)\s*")
_DONT_ACTIVATE_RE = re.compile(r"@@dont_activate(?!\w)\s*")


class LorebookContext(BaseModel):
    """Live conversation state a lorebook is matched against."""

    messages: list[Message] = Field(default_factory=list)
    scan_text: str = ""
    assistant_message_count: int = 0


# ---------------------------------------------------------------------------
# Decorator parsing
# ---------------------------------------------------------------------------

@lru_cache(maxsize=4096)
def parse_decorators(content: str) -> tuple[ParsedDecorators, str]:
    """Parse @@decorators out of entry content.

    Returns (decorators, clean_content) where clean_content has every
    decorator tag removed and is whitespace-trimmed. Idempotent: parsing the
    clean content again yields no decorators and the same text.
    """
    fields: dict = {}
    clean = content

    for name, find, strip in (
        ("depth", _DEPTH_RE, _DEPTH_STRIP_RE),
        ("activate_only_after", _AFTER_RE, _AFTER_STRIP_RE),
        ("activate_only_every", _EVERY_RE, _EVERY_STRIP_RE),
        ("scan_depth", _SCAN_DEPTH_RE, _SCAN_DEPTH_STRIP_RE),
    ):
        match = find.search(clean)
        if match:
            fields[name] = int(match.group(1))
            clean = strip.sub("", clean)

    match = _ROLE_RE.search(clean)
    if match:
        fields["role"] = Role(match.group(1))
        clean = _ROLE_STRIP_RE.sub("", clean)

    fields["additional_keys"], clean = _parse_key_groups(_ADDITIONAL_KEYS_RE, clean)
    fields["exclude_keys"], clean = _parse_key_groups(_EXCLUDE_KEYS_RE, clean)

    if _DONT_ACTIVATE_RE.search(clean):
        fields["dont_activate"] = True
        clean = _DONT_ACTIVATE_RE.sub("", clean)
    if _ACTIVATE_RE.search(clean):
        fields["activate"] = True
        clean = _ACTIVATE_RE.sub("", clean)

    # Last: a bare "\S+" would otherwise swallow a following decorator
    match = _POSITION_RE.search(clean)
    if match:
        fields["position"] = match.group(1)
        clean = _POSITION_STRIP_RE.sub("", clean)

    return ParsedDecorators(**fields), clean.strip()


def _parse_key_groups(
    pattern: re.Pattern, text: str
) -> tuple[tuple[tuple[str, ...], ...], str]:
    groups: list[tuple[str, ...]] = []
    for match in pattern.finditer(text):
        keys = tuple(k.strip() for k in match.group(1).split(",") if k.strip())
        if keys:
            groups.append(keys)
        else:
            logger.warning("Empty key group skipped: %r", match.group(0))
    return tuple(groups), pattern.sub("", text)


# ---------------------------------------------------------------------------
# Key matching
# ---------------------------------------------------------------------------

def key_matches(key: str, text: str, use_regex: bool, case_sensitive: bool | None) -> bool:
    """Return True if a single key matches the text.

    Empty keys never match. Invalid regex keys are logged and treated as
    non-matching.
    """
    if not key:
        return False
    if use_regex:
        flags = 0 if case_sensitive else re.IGNORECASE
        try:
            return re.search(key, text, flags) is not None
        except re.error as e:
            logger.warning("Invalid regex pattern in lorebook entry: %r (%s)", key, e)
            return False
    if case_sensitive:
        return key in text
    return key.lower() in text.lower()


def _any_key(keys, text: str, entry: LoreEntry) -> bool:
    return any(key_matches(k, text, entry.use_regex, entry.case_sensitive) for k in keys)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class LorebookEngine:
    """Selects the lore entries that apply to the current conversation state."""

    def find_matches(
        self,
        lorebook: Lorebook,
        context: LorebookContext,
        *,
        throttle: bool = True,
    ) -> list[MatchedEntry]:
        """Return the entries that activate for `context`, sorted.

        With `throttle=False` the @@activate_only_after/every conditions are
        not checked. The compiler uses this for constant lore, whose throttle
        is judged per turn by the assembler (see `meets_conditions`).
        """
        matched: list[MatchedEntry] = []

        for entry in lorebook.entries:
            if not entry.enabled:
                continue

            decorators, clean_content = parse_decorators(entry.content)

            if not entry.constant:
                scan_depth = decorators.scan_depth
                if scan_depth is None:
                    scan_depth = lorebook.scan_depth
                text = _scan_window(context, scan_depth)
                if not self._matches_keys(entry, decorators, text):
                    continue

            if decorators.dont_activate:
                continue
            if throttle and not meets_conditions(decorators, context.assistant_message_count):
                continue

            matched.append(MatchedEntry(
                entry=entry, decorators=decorators, processed_content=clean_content,
            ))

        logger.debug(
            "lorebook matched %d/%d entries (assistant_turns=%d)",
            len(matched), len(lorebook.entries), context.assistant_message_count,
        )
        return sort_entries(matched)

    def _matches_keys(self, entry: LoreEntry, decorators: ParsedDecorators, text: str) -> bool:
        for group in decorators.exclude_keys:
            if _any_key(group, text, entry):
                return False

        if decorators.activate:
            return True

        if entry.selective and entry.secondary_keys:
            return _any_key(entry.keys, text, entry) and _any_key(entry.secondary_keys, text, entry)

        if _any_key(entry.keys, text, entry):
            return True
        return any(_any_key(group, text, entry) for group in decorators.additional_keys)


def _scan_window(context: LorebookContext, scan_depth: int | None) -> str:
    """Text to scan: the last `scan_depth` messages if set, else everything."""
    if scan_depth is None or scan_depth <= 0 or not context.messages:
        return context.scan_text
    return " ".join(m.content for m in context.messages[-scan_depth:])


def meets_conditions(decorators: ParsedDecorators, assistant_count: int) -> bool:
    """dont_activate and the activate_only_after/every throttle, for one turn."""
    if decorators.dont_activate:
        return False
    if decorators.activate_only_after is not None and assistant_count < decorators.activate_only_after:
        return False
    every = decorators.activate_only_every
    if every is not None:
        if every == 0:
            logger.warning("@@activate_only_every 0 ignored")
        elif assistant_count % every != 0:
            return False
    return True


def sort_entries(entries: list[MatchedEntry]) -> list[MatchedEntry]:
    """Priority descending, then insertion_order ascending (stable)."""
    return sorted(entries, key=lambda m: (-m.entry.priority, m.entry.insertion_order))
