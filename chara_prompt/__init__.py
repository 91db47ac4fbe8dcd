"""Persona & lore compilation engine for character chat.

    from chara_prompt import ContextCompiler, PromptAssembler

    compiled = ContextCompiler().compile_static_context(card.data, "Alice")
    prompt = PromptAssembler().build_prompt(
        messages=history, user_prompt="Hi!", compiled_context=compiled,
        persona=card.data, user_name="Alice", conversation_id=conv_id,
    )
"""

from chara_prompt.assembler import PromptAssembler, PromptConfigError  # noqa: F401
from chara_prompt.compiler import ContextCompiler  # noqa: F401
from chara_prompt.lorebook import LorebookContext, LorebookEngine  # noqa: F401
from chara_prompt.macros import MacroProcessor  # noqa: F401
