"""Compiled-context cache, keyed by conversation.

The engine itself never stores anything; these helpers are for callers that
want the once-per-conversation compilation cached between turns.

Each cached CompiledContext carries the fingerprint of the inputs it was
built from. `get_or_compile()` compares that fingerprint with the current
persona on every read and recompiles on mismatch, so any change to the card
(or user name, or chosen greeting) invalidates the cache.

Saves overwrite. Two requests racing on a cold cache both compile and the
last write wins; since compilation is deterministic both writes are equal.

Directory layout for JsonContextStore:

    {base}/
      compiled/
        {conversation_id}.json   ← CompiledContext
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from chara_prompt.compiler import ContextCompiler, persona_fingerprint
from chara_prompt.models import CharacterCardData, CompiledContext

logger = logging.getLogger(__name__)

_UNSAFE_ID_RE = re.compile(r"[^A-Za-z0-9_.-]")


class ContextStore(Protocol):
    def load(self, conversation_id: str) -> CompiledContext | None: ...
    def save(self, conversation_id: str, context: CompiledContext) -> None: ...
    def delete(self, conversation_id: str) -> None: ...


# ---------------------------------------------------------------------------
# InMemoryContextStore
# ---------------------------------------------------------------------------

class InMemoryContextStore:
    """Process-local store. Holds JSON so callers can't mutate cached state."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def load(self, conversation_id: str) -> CompiledContext | None:
        raw = self._data.get(conversation_id)
        if raw is None:
            return None
        return CompiledContext.model_validate_json(raw)

    def save(self, conversation_id: str, context: CompiledContext) -> None:
        self._data[conversation_id] = context.model_dump_json()

    def delete(self, conversation_id: str) -> None:
        self._data.pop(conversation_id, None)


# ---------------------------------------------------------------------------
# JsonContextStore
# ---------------------------------------------------------------------------

class JsonContextStore:
    def __init__(self, base_path: Path) -> None:
        self._root = base_path / "compiled"
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, conversation_id: str) -> Path:
        return self._root / f"{_UNSAFE_ID_RE.sub('_', conversation_id)}.json"

    def load(self, conversation_id: str) -> CompiledContext | None:
        path = self._path(conversation_id)
        if not path.exists():
            return None
        try:
            return CompiledContext.model_validate_json(path.read_text())
        except ValidationError as e:
            logger.warning("Corrupt compiled context %s ignored: %s", path.name, e)
            return None

    def save(self, conversation_id: str, context: CompiledContext) -> None:
        self._path(conversation_id).write_text(context.model_dump_json(indent=2))

    def delete(self, conversation_id: str) -> None:
        self._path(conversation_id).unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Read-through helper
# ---------------------------------------------------------------------------

def get_or_compile(
    store: ContextStore,
    conversation_id: str,
    persona: CharacterCardData,
    user_name: str,
    greeting_index: int | None = None,
    compiler: ContextCompiler | None = None,
) -> CompiledContext:
    """Return the cached context if still valid, else compile and store it."""
    expected = persona_fingerprint(persona, user_name, greeting_index)
    cached = store.load(conversation_id)
    if cached is not None and cached.fingerprint == expected:
        return cached

    if cached is not None:
        logger.info("Compiled context for %s is stale, recompiling", conversation_id)
    compiled = (compiler or ContextCompiler()).compile_static_context(
        persona, user_name, greeting_index,
    )
    store.save(conversation_id, compiled)
    return compiled
