"""Static context compilation: runs once per conversation.

Resolves the persona's text fields and its constant lore entries through the
macro processor. The result is cached by the caller (see chara_prompt.cache)
and re-supplied to the prompt assembler on every turn.

Compilation is a pure function of (persona, user_name, greeting_index), so
recompiling is always safe: two concurrent cache misses produce equivalent
contexts and the store can simply keep whichever is written last.
"""

from __future__ import annotations

import hashlib
import json
import logging

from chara_prompt.lorebook import LorebookContext, LorebookEngine
from chara_prompt.macros import MacroProcessor
from chara_prompt.models import CharacterCardData, CompiledContext, Lorebook, MacroContext, MatchedEntry

logger = logging.getLogger(__name__)

# Bump when CompiledContext's shape or compilation rules change so cached
# contexts from older releases are recompiled.
COMPILER_VERSION = 2


def persona_fingerprint(
    persona: CharacterCardData, user_name: str, greeting_index: int | None = None
) -> str:
    """Hash of every input a compiled context depends on."""
    payload = {
        "version": COMPILER_VERSION,
        "persona": persona.model_dump(mode="json"),
        "user_name": user_name,
        "greeting_index": greeting_index or 0,
    }
    raw = json.dumps(payload, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def select_greeting(persona: CharacterCardData, greeting_index: int | None = None) -> str:
    """Index 0/None is first_mes; N picks alternate_greetings[N-1].

    Out-of-range indices fall back to first_mes.
    """
    if not greeting_index:
        return persona.first_mes
    alternate = greeting_index - 1
    if 0 <= alternate < len(persona.alternate_greetings):
        return persona.alternate_greetings[alternate]
    return persona.first_mes


class ContextCompiler:
    def __init__(
        self,
        macros: MacroProcessor | None = None,
        lorebook_engine: LorebookEngine | None = None,
    ) -> None:
        self._macros = macros or MacroProcessor()
        self._lorebook = lorebook_engine or LorebookEngine()

    def compile_static_context(
        self,
        persona: CharacterCardData,
        user_name: str,
        greeting_index: int | None = None,
    ) -> CompiledContext:
        character_name = persona.nickname or persona.name
        ctx = MacroContext(char_name=character_name, user_name=user_name)

        def resolve(text: str) -> str | None:
            return self._macros.process(text, ctx) if text else None

        constant_entries = self._compile_constant_lore(persona.character_book, ctx)
        compiled = CompiledContext(
            character_name=character_name,
            character_nickname=persona.nickname,
            system_prompt=resolve(persona.system_prompt),
            post_history_instructions=resolve(persona.post_history_instructions),
            description=self._macros.process(persona.description, ctx),
            personality=resolve(persona.personality),
            scenario=resolve(persona.scenario),
            greeting=self._macros.process(select_greeting(persona, greeting_index), ctx),
            constant_lorebook_entries=constant_entries,
            fingerprint=persona_fingerprint(persona, user_name, greeting_index),
        )
        logger.debug(
            "compiled static context char=%s constant_lore=%d",
            character_name, len(constant_entries),
        )
        return compiled

    def _compile_constant_lore(
        self, book: Lorebook | None, ctx: MacroContext
    ) -> list[MatchedEntry]:
        if book is None:
            return []
        result: list[MatchedEntry] = []
        empty = LorebookContext()
        for entry in book.entries:
            if not (entry.enabled and entry.constant):
                continue
            # Run through the engine on its own so decorator handling lives in one
            # place. Throttle decorators depend on the turn and are checked by
            # the assembler.
            single = book.model_copy(update={"entries": [entry]})
            for match in self._lorebook.find_matches(single, empty, throttle=False):
                result.append(match.model_copy(update={
                    "processed_content": self._macros.process(match.processed_content, ctx),
                }))
        return result
