"""Tests for character card loading: JSON, PNG chunks, V2 conversion."""

import base64
import json
import struct
import zlib
from pathlib import Path

import pytest

from chara_prompt.cards import CardError, PNG_SIGNATURE, load_card, parse_card, read_text_chunks

V3_CARD = {
    "spec": "chara_card_v3",
    "spec_version": "3.0",
    "data": {
        "name": "Elara",
        "description": "An elven ranger.",
        "first_mes": "Hello {{user}}.",
        "nickname": "Ela",
        "character_book": {"entries": [{"keys": ["sword"], "content": "It glows."}]},
    },
}

V2_CARD = {
    "spec": "chara_card_v2",
    "spec_version": "2.0",
    "data": {
        "name": "Bram",
        "description": "A blacksmith.",
        "first_mes": "What do you need?",
        "alternate_greetings": ["Back again?"],
        "character_book": {"entries": [{"keys": ["anvil"], "content": "Heavy."}]},
    },
}


def _chunk(chunk_type: bytes, data: bytes) -> bytes:
    return struct.pack("!I", len(data)) + chunk_type + data + struct.pack("!I", zlib.crc32(chunk_type + data))


def _png(text_chunks: dict[str, dict]) -> bytes:
    out = PNG_SIGNATURE + _chunk(b"IHDR", b"\x00" * 13)
    for keyword, card in text_chunks.items():
        payload = base64.b64encode(json.dumps(card).encode("utf-8"))
        out += _chunk(b"tEXt", keyword.encode("latin-1") + b"\x00" + payload)
    return out + _chunk(b"IEND", b"")


# ── parse_card ───────────────────────────────────────────────


def test_parse_v3():
    card = parse_card(V3_CARD)
    assert card.data.name == "Elara"
    assert card.data.nickname == "Ela"
    assert card.data.character_book.entries[0].keys == ["sword"]


def test_parse_v2_converted():
    card = parse_card(V2_CARD)
    assert card.spec == "chara_card_v3"
    assert card.spec_version == "3.0"
    assert card.data.alternate_greetings == ["Back again?"]
    assert card.data.character_book.entries[0].content == "Heavy."


def test_missing_required_field():
    bad = {"spec": "chara_card_v3", "spec_version": "3.0", "data": {"name": "X"}}
    with pytest.raises(CardError, match="Invalid character card"):
        parse_card(bad)


def test_wrong_spec_rejected():
    with pytest.raises(CardError):
        parse_card({**V3_CARD, "spec": "something_else"})


def test_non_object_rejected():
    with pytest.raises(CardError, match="JSON object"):
        parse_card([1, 2, 3])


# ── load_card ────────────────────────────────────────────────


def test_load_json(tmp_path: Path):
    path = tmp_path / "elara.json"
    path.write_text(json.dumps(V3_CARD))
    assert load_card(path).data.name == "Elara"


def test_load_invalid_json(tmp_path: Path):
    path = tmp_path / "broken.json"
    path.write_text("{oops")
    with pytest.raises(CardError, match="not valid JSON"):
        load_card(path)


def test_load_missing_file(tmp_path: Path):
    with pytest.raises(CardError, match="Cannot read"):
        load_card(tmp_path / "missing.json")


def test_load_png_ccv3(tmp_path: Path):
    path = tmp_path / "elara.png"
    path.write_bytes(_png({"chara": V2_CARD, "ccv3": V3_CARD}))
    assert load_card(path).data.name == "Elara"


def test_load_png_legacy_chara(tmp_path: Path):
    path = tmp_path / "bram.png"
    path.write_bytes(_png({"chara": V2_CARD}))
    assert load_card(path).data.name == "Bram"


def test_load_png_without_card(tmp_path: Path):
    path = tmp_path / "plain.png"
    path.write_bytes(_png({}))
    with pytest.raises(CardError, match="no embedded character card"):
        load_card(path)


def test_load_png_ccv3_wrong_spec(tmp_path: Path):
    path = tmp_path / "odd.png"
    path.write_bytes(_png({"ccv3": V2_CARD}))
    with pytest.raises(CardError, match="Invalid character card spec"):
        load_card(path)


def test_read_text_chunks():
    chunks = read_text_chunks(_png({"ccv3": V3_CARD}))
    assert set(chunks) == {"ccv3"}
    assert json.loads(base64.b64decode(chunks["ccv3"]))["data"]["name"] == "Elara"
