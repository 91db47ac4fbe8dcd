"""Character card loading.

Cards arrive as JSON files or as PNG images with the card embedded in a
tEXt chunk as base64 JSON. The `ccv3` chunk holds a V3 card; the legacy
`chara` chunk usually holds a V2 card, which is converted to V3 on load.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from chara_prompt.models import CharacterCardV3

logger = logging.getLogger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


class CardError(ValueError):
    """Raised when a character card cannot be read or fails validation."""


def parse_card(data: dict[str, Any]) -> CharacterCardV3:
    """Validate a card dict, converting chara_card_v2 to V3."""
    if not isinstance(data, dict):
        raise CardError(f"Character card must be a JSON object, got {type(data).__name__}")
    if data.get("spec") == "chara_card_v2":
        data = convert_v2_to_v3(data)
    try:
        return CharacterCardV3.model_validate(data)
    except ValidationError as e:
        raise CardError(f"Invalid character card: {e}") from e


def convert_v2_to_v3(card: dict[str, Any]) -> dict[str, Any]:
    v2 = card.get("data") or {}
    data = {
        "name": v2.get("name", ""),
        "description": v2.get("description", ""),
        "personality": v2.get("personality", ""),
        "scenario": v2.get("scenario", ""),
        "first_mes": v2.get("first_mes", ""),
        "mes_example": v2.get("mes_example", ""),
        "creator_notes": v2.get("creator_notes", ""),
        "system_prompt": v2.get("system_prompt", ""),
        "post_history_instructions": v2.get("post_history_instructions", ""),
        "alternate_greetings": v2.get("alternate_greetings") or [],
        "tags": v2.get("tags") or [],
        "creator": v2.get("creator", ""),
        "character_version": v2.get("character_version", ""),
        "extensions": v2.get("extensions") or {},
    }
    if v2.get("character_book"):
        data["character_book"] = v2["character_book"]
    return {"spec": "chara_card_v3", "spec_version": "3.0", "data": data}


def load_card(path: Path) -> CharacterCardV3:
    """Load a card from a .json or .png file."""
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise CardError(f"Cannot read character card {path}: {e}") from e

    if raw.startswith(PNG_SIGNATURE):
        return parse_card(_card_from_png(raw, path))
    try:
        return parse_card(json.loads(raw))
    except json.JSONDecodeError as e:
        raise CardError(f"Character card {path.name} is not valid JSON: {e}") from e


def read_text_chunks(raw: bytes) -> dict[str, str]:
    """Return {keyword: text} for every tEXt chunk in PNG bytes."""
    chunks: dict[str, str] = {}
    pos = len(PNG_SIGNATURE)
    while pos + 8 <= len(raw):
        length = int.from_bytes(raw[pos:pos + 4], "big")
        chunk_type = raw[pos + 4:pos + 8]
        data = raw[pos + 8:pos + 8 + length]
        pos += 12 + length  # length + type + data + crc
        if chunk_type == b"tEXt" and b"\x00" in data:
            keyword, _, text = data.partition(b"\x00")
            chunks[keyword.decode("latin-1")] = text.decode("latin-1")
        elif chunk_type == b"IEND":
            break
    return chunks


def _card_from_png(raw: bytes, path: Path) -> dict[str, Any]:
    chunks = read_text_chunks(raw)
    keyword = "ccv3" if "ccv3" in chunks else "chara" if "chara" in chunks else None
    if keyword is None:
        raise CardError(f"{path.name} has no embedded character card")
    try:
        card = json.loads(base64.b64decode(chunks[keyword]).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CardError(f"Embedded {keyword} chunk in {path.name} is unreadable: {e}") from e
    if keyword == "ccv3" and isinstance(card, dict) and card.get("spec") != "chara_card_v3":
        raise CardError(f"Invalid character card spec in {path.name}")
    logger.debug("loaded %s card from %s", keyword, path.name)
    return card
