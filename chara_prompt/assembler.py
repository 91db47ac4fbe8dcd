"""Per-turn prompt assembly.

Takes a compiled static context plus the live conversation and produces the
exact message list handed to a chat-completion API, in this order:

  1. system_prompt                (system, if present)
  2. description                  (system, always)
  3. "Personality: ..."           (system, if present)
  4. "Scenario: ..."              (system, if present)
  5. constant lore, dynamic lore  (decorator role, default system)
  6. history + current prompt     (user/assistant only, original order)
  7. post_history_instructions    (system, if present)

Constant lore comes from the compiled context in card order, filtered here by
its activation throttle for the current turn. Dynamic lore is matched here
against the live scan text and sorted by priority. The two blocks are
concatenated, not merged.
"""

from __future__ import annotations

import logging

from chara_prompt.compiler import ContextCompiler
from chara_prompt.lorebook import LorebookContext, LorebookEngine, meets_conditions
from chara_prompt.macros import MacroProcessor
from chara_prompt.models import (
    CharacterCardData,
    CompiledContext,
    MacroContext,
    MatchedEntry,
    Message,
    PromptMessage,
    Role,
)
from chara_prompt.regex_scripts import RegexScriptProcessor, extract_scripts

logger = logging.getLogger(__name__)

_CHAT_ROLES = (Role.USER, Role.ASSISTANT)


class PromptConfigError(RuntimeError):
    """Raised when build_prompt has nothing to build a context from."""


class PromptAssembler:
    def __init__(
        self,
        compiler: ContextCompiler | None = None,
        macros: MacroProcessor | None = None,
        lorebook_engine: LorebookEngine | None = None,
        regex_scripts: RegexScriptProcessor | None = None,
    ) -> None:
        self._macros = macros or MacroProcessor()
        self._lorebook = lorebook_engine or LorebookEngine()
        self._compiler = compiler or ContextCompiler(self._macros, self._lorebook)
        self._regex_scripts = regex_scripts or RegexScriptProcessor()

    def build_prompt(
        self,
        *,
        messages: list[Message],
        user_prompt: str,
        compiled_context: CompiledContext | None = None,
        persona: CharacterCardData | None = None,
        user_name: str = "User",
        conversation_id: str | None = None,
        assistant_message_count: int | None = None,
        reprocess_history: bool = True,
    ) -> list[PromptMessage]:
        """Assemble the prompt for one turn.

        Args:
            messages:                Stored history, oldest first.
            user_prompt:             The new user input (not yet in history).
            compiled_context:        Cached static context. Compiled from
                                     `persona` when omitted.
            persona:                 Card data. Supplies the lorebook for
                                     dynamic matching and regex scripts.
            user_name:               Substituted for {{user}}.
            conversation_id:         Seed for {{pick:...}}; log correlation.
            assistant_message_count: Turn count for activation throttling.
                                     Defaults to the assistant messages in
                                     `messages`.
            reprocess_history:       Re-run macros over stored history. Turn
                                     off when history is stored already
                                     resolved, so {{roll}} results stay fixed.
                                     Hidden keys and comments are still
                                     stripped from history either way.

        Raises:
            PromptConfigError: neither compiled_context nor persona given.
        """
        if compiled_context is None:
            if persona is None:
                raise PromptConfigError("Either compiled_context or persona must be provided")
            compiled_context = self._compiler.compile_static_context(persona, user_name)

        macro_ctx = MacroContext(
            char_name=compiled_context.character_name,
            user_name=user_name,
            conversation_id=conversation_id,
        )

        raw = [*messages, Message(role=Role.USER, content=user_prompt)]
        working: list[Message] = []
        for i, msg in enumerate(raw):
            is_current = i == len(raw) - 1
            content = msg.content
            if reprocess_history or is_current:
                content = self._macros.process(content, macro_ctx)
            else:
                content = self._macros.strip_markers(content)
            working.append(msg.model_copy(update={"content": content}))

        if persona is not None:
            working = self._apply_regex_scripts(working, persona)

        if assistant_message_count is None:
            assistant_message_count = sum(1 for m in messages if m.role == Role.ASSISTANT)

        dynamic = self._match_dynamic_lore(
            persona, raw, working, assistant_message_count, macro_ctx,
        )
        constant = [
            m for m in compiled_context.constant_lorebook_entries
            if meets_conditions(m.decorators, assistant_message_count)
        ]
        lore = [*constant, *dynamic]

        prompt: list[PromptMessage] = []
        if compiled_context.system_prompt:
            prompt.append(PromptMessage(role=Role.SYSTEM, content=compiled_context.system_prompt))
        prompt.append(PromptMessage(role=Role.SYSTEM, content=compiled_context.description))
        if compiled_context.personality:
            prompt.append(PromptMessage(
                role=Role.SYSTEM, content=f"Personality: {compiled_context.personality}",
            ))
        if compiled_context.scenario:
            prompt.append(PromptMessage(
                role=Role.SYSTEM, content=f"Scenario: {compiled_context.scenario}",
            ))
        for match in lore:
            prompt.append(PromptMessage(
                role=match.decorators.role or Role.SYSTEM, content=match.processed_content,
            ))
        for msg in working:
            if msg.role in _CHAT_ROLES:
                prompt.append(PromptMessage(role=msg.role, content=msg.content))
        if compiled_context.post_history_instructions:
            prompt.append(PromptMessage(
                role=Role.SYSTEM, content=compiled_context.post_history_instructions,
            ))

        logger.debug(
            "built prompt conversation=%s messages=%d constant_lore=%d dynamic_lore=%d",
            conversation_id, len(prompt),
            len(constant), len(dynamic),
        )
        return prompt

    def _match_dynamic_lore(
        self,
        persona: CharacterCardData | None,
        raw: list[Message],
        working: list[Message],
        assistant_message_count: int,
        macro_ctx: MacroContext,
    ) -> list[MatchedEntry]:
        book = persona.character_book if persona is not None else None
        if book is None or not book.entries:
            return []

        # Hidden keys come from the raw text: macro processing strips the markers
        scan_messages: list[Message] = []
        all_keys: list[str] = []
        for raw_msg, msg in zip(raw, working):
            keys = self._macros.extract_hidden_keys(raw_msg.content)
            all_keys.extend(keys)
            scan_content = " ".join([msg.content, *keys]) if keys else msg.content
            scan_messages.append(msg.model_copy(update={"content": scan_content}))

        scan_text = " ".join(m.content for m in working)
        if all_keys:
            scan_text = f"{scan_text} {' '.join(all_keys)}"

        context = LorebookContext(
            messages=scan_messages,
            scan_text=scan_text,
            assistant_message_count=assistant_message_count,
        )
        dynamic_book = book.model_copy(update={
            "entries": [e for e in book.entries if not e.constant],
        })
        return [
            match.model_copy(update={
                "processed_content": self._macros.process(match.processed_content, macro_ctx),
            })
            for match in self._lorebook.find_matches(dynamic_book, context)
        ]

    def _apply_regex_scripts(
        self, working: list[Message], persona: CharacterCardData
    ) -> list[Message]:
        scripts = extract_scripts(persona.extensions)
        if not scripts:
            return working
        last = len(working) - 1
        return [
            msg.model_copy(update={"content": self._regex_scripts.process(
                msg.content,
                scripts,
                is_ai_message=msg.role == Role.ASSISTANT,
                for_prompt=True,
                message_depth=last - i,
            )})
            for i, msg in enumerate(working)
        ]
