"""Core domain models.

Every stage of prompt compilation operates on these types. Pydantic is used
for validation and serialisation at every data boundary: character cards
come in as JSON, compiled contexts go back out as JSON for the caller to
persist.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Role(str, Enum):
    """Chat-completion message role."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


# ---------------------------------------------------------------------------
# Lorebook
# ---------------------------------------------------------------------------

class LoreEntry(BaseModel):
    """A conditional knowledge snippet. `content` may embed @@decorators."""

    keys: list[str] = Field(default_factory=list)
    content: str = ""
    extensions: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    insertion_order: int = 0
    case_sensitive: bool | None = None
    use_regex: bool = False
    constant: bool = False
    selective: bool = False
    secondary_keys: list[str] = Field(default_factory=list)
    priority: int = 0  # higher goes first
    name: str | None = None
    id: int | str | None = None
    comment: str | None = None
    position: str | None = None

    @field_validator("priority", "insertion_order", mode="before")
    @classmethod
    def _null_is_zero(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("secondary_keys", mode="before")
    @classmethod
    def _null_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class Lorebook(BaseModel):
    entries: list[LoreEntry] = Field(default_factory=list)
    scan_depth: int | None = None
    name: str | None = None
    description: str | None = None
    token_budget: int | None = None
    recursive_scanning: bool | None = None
    extensions: dict[str, Any] = Field(default_factory=dict)


class ParsedDecorators(BaseModel):
    """Decorators parsed out of a lore entry's content.

    Frozen because parse results are memoised and shared between calls.
    """

    model_config = ConfigDict(frozen=True)

    depth: int | None = None
    role: Role | None = None
    activate_only_after: int | None = None
    activate_only_every: int | None = None
    position: str | None = None
    scan_depth: int | None = None
    additional_keys: tuple[tuple[str, ...], ...] = ()
    exclude_keys: tuple[tuple[str, ...], ...] = ()
    activate: bool = False
    dont_activate: bool = False


class MatchedEntry(BaseModel):
    """An activated lore entry with its decorators and stripped content."""

    entry: LoreEntry
    decorators: ParsedDecorators
    processed_content: str


# ---------------------------------------------------------------------------
# Character card
# ---------------------------------------------------------------------------

class CharacterCardData(BaseModel):
    """Persona fields of a character card (the `data` object)."""

    name: str
    description: str
    first_mes: str
    nickname: str | None = None
    personality: str = ""
    scenario: str = ""
    system_prompt: str = ""
    post_history_instructions: str = ""
    alternate_greetings: list[str] = Field(default_factory=list)
    group_only_greetings: list[str] = Field(default_factory=list)
    mes_example: str = ""
    creator_notes: str = ""
    tags: list[str] = Field(default_factory=list)
    creator: str = ""
    character_version: str = ""
    extensions: dict[str, Any] = Field(default_factory=dict)
    character_book: Lorebook | None = None


class CharacterCardV3(BaseModel):
    spec: Literal["chara_card_v3"] = "chara_card_v3"
    spec_version: Literal["3.0"] = "3.0"
    data: CharacterCardData


# ---------------------------------------------------------------------------
# Compiled context (cached per conversation by the caller)
# ---------------------------------------------------------------------------

class CompiledContext(BaseModel):
    character_name: str
    character_nickname: str | None = None
    system_prompt: str | None = None
    post_history_instructions: str | None = None
    description: str
    personality: str | None = None
    scenario: str | None = None
    greeting: str
    constant_lorebook_entries: list[MatchedEntry] = Field(default_factory=list)
    fingerprint: str = ""  # identifies the inputs this was compiled from


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

class Message(BaseModel):
    """A single message in a conversation's history."""

    role: Role
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PromptMessage(BaseModel):
    """One element of the assembled prompt handed to a chat-completion API."""

    role: Role
    content: str


class MacroContext(BaseModel):
    char_name: str
    user_name: str
    conversation_id: str | None = None  # seed for {{pick:...}}
