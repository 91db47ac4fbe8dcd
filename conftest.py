import shutil
from pathlib import Path

import pytest

from chara_prompt.lorebook import parse_decorators
from chara_prompt.models import CharacterCardData

TEST_DATA_DIR = Path("data-tests")


@pytest.fixture(autouse=True)
def clean_test_data():
    """Wipe data-tests/ and the decorator memo before every test."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    TEST_DATA_DIR.mkdir()
    parse_decorators.cache_clear()
    yield
    # leave data-tests around after tests for inspection; CI can ignore it


@pytest.fixture
def data_dir() -> Path:
    return TEST_DATA_DIR


@pytest.fixture
def elara() -> CharacterCardData:
    """A persona with every optional prompt field populated."""
    return CharacterCardData.model_validate({
        "name": "Elara",
        "description": "{{char}} is an elven ranger who guards the forest for {{user}}.",
        "personality": "Watchful, dry-humoured.",
        "scenario": "{{user}} meets {{char}} at the forest edge.",
        "system_prompt": "You are {{char}}. Stay in character.",
        "post_history_instructions": "Reply as {{char}} only.",
        "first_mes": "Hello {{user}}, I am {{char}}.",
        "alternate_greetings": ["Halt, {{user}}!", "Welcome back."],
        "character_book": {
            "scan_depth": None,
            "entries": [
                {
                    "keys": [],
                    "content": "The forest is ancient.",
                    "constant": True,
                    "priority": 1,
                    "insertion_order": 0,
                },
                {
                    "keys": ["sword"],
                    "content": "@@role assistant {{char}}'s sword glows.",
                    "priority": 5,
                    "insertion_order": 1,
                },
                {
                    "keys": ["river"],
                    "content": "The river runs north.",
                    "priority": 3,
                    "insertion_order": 2,
                },
            ],
        },
    })
