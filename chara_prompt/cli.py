"""chara-prompt: assemble (and optionally send) the prompt for one turn."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from chara_prompt.assembler import PromptAssembler
from chara_prompt.cache import JsonContextStore, get_or_compile
from chara_prompt.cards import CardError, load_card
from chara_prompt.chat import run_turn
from chara_prompt.config import load_settings
from chara_prompt.llm import ChatLLM, LLMError
from chara_prompt.models import Message


def _load_history(path: Path | None) -> list[Message]:
    if path is None:
        return []
    return [Message.model_validate(m) for m in json.loads(path.read_text())]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Assemble a character chat prompt")
    parser.add_argument("card", type=Path, help="Character card (.json or .png)")
    parser.add_argument("-m", "--message", required=True, help="New user message")
    parser.add_argument("--user", default=None, help="User display name (default: $USER_NAME)")
    parser.add_argument("--history", type=Path, default=None,
                        help="JSON file with prior messages [{role, content}, ...]")
    parser.add_argument("--greeting", type=int, default=None,
                        help="Greeting index (0 = first_mes, N = alternate N)")
    parser.add_argument("--conversation", default="cli",
                        help="Conversation id (cache key and {{pick}} seed)")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Cache directory (default: $DATA_DIR or ./data)")
    parser.add_argument("--send", action="store_true",
                        help="Send the prompt to the configured LLM and print the reply")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    user_name = args.user or settings.user_name
    store = JsonContextStore(args.data_dir or settings.data_dir)
    try:
        card = load_card(args.card)
        history = _load_history(args.history)
    except (CardError, OSError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    if not args.send:
        compiled = get_or_compile(store, args.conversation, card.data, user_name, args.greeting)
        prompt = PromptAssembler().build_prompt(
            messages=history,
            user_prompt=args.message,
            compiled_context=compiled,
            persona=card.data,
            user_name=user_name,
            conversation_id=args.conversation,
        )
        print(json.dumps([m.model_dump(mode="json") for m in prompt], indent=2, ensure_ascii=False))
        return 0

    llm = ChatLLM(
        base_url=settings.llm_base_url,
        api_key=settings.llm_api_key,
        model=settings.llm_model,
        max_tokens=settings.llm_max_tokens,
        timeout=settings.llm_timeout,
    )
    try:
        result = asyncio.run(run_turn(
            store=store,
            conversation_id=args.conversation,
            persona=card.data,
            history=history,
            user_prompt=args.message,
            user_name=user_name,
            llm=llm,
            greeting_index=args.greeting,
        ))
    except LLMError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    print(result.reply.content)
    return 0


if __name__ == "__main__":
    sys.exit(main())
