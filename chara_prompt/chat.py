"""Turn runner: compiles (or reuses) the static context, assembles the prompt
for one user turn and sends it to the model.

Turn flow:
  1. Resolve the compiled context through the cache; recompile when the
     stored fingerprint no longer matches the card.
  2. Assemble the prompt from the compiled context, the history and the new
     user input (dynamic lore, live macros).
  3. Call the LLM with the assembled messages.
  4. Return the prompt, the user input as typed and the reply. Persisting
     them is up to the caller; the stored input keeps its hidden keys for
     later lore scans.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel

from chara_prompt.assembler import PromptAssembler
from chara_prompt.cache import ContextStore, get_or_compile
from chara_prompt.llm import LLM
from chara_prompt.models import CharacterCardData, Message, PromptMessage, Role

logger = logging.getLogger(__name__)


class TurnResult(BaseModel):
    prompt: list[PromptMessage]
    user_message: Message  # the input as typed, for the caller to append to history
    reply: Message


async def run_turn(
    *,
    store: ContextStore,
    conversation_id: str,
    persona: CharacterCardData,
    history: list[Message],
    user_prompt: str,
    user_name: str,
    llm: LLM,
    greeting_index: int | None = None,
    assembler: PromptAssembler | None = None,
) -> TurnResult:
    """Execute one user turn and return the prompt sent and the model reply."""
    assembler = assembler or PromptAssembler()

    compiled = get_or_compile(store, conversation_id, persona, user_name, greeting_index)
    prompt = assembler.build_prompt(
        messages=history,
        user_prompt=user_prompt,
        compiled_context=compiled,
        persona=persona,
        user_name=user_name,
        conversation_id=conversation_id,
    )

    text = await llm(prompt)
    logger.debug("turn done conversation=%s reply_len=%d", conversation_id, len(text))
    return TurnResult(
        prompt=prompt,
        user_message=Message(role=Role.USER, content=user_prompt),
        reply=Message(role=Role.ASSISTANT, content=text.strip()),
    )
