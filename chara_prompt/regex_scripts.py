"""Regex scripts carried in a card's `extensions.regex_scripts`.

Each script is a find/replace pair written in JavaScript notation
(`/pattern/flags`, `$1` back-references) because that is how card editors
export them. Scripts are filtered by target (AI or user message), by mode
(display vs prompt) and by message depth, then applied in order. A script
that fails to compile or apply is logged and skipped.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

PLACEMENT_AI = 1
PLACEMENT_USER = 2

_JS_REGEX_RE = re.compile(r"^/(.+?)/([gimsuvy]*)$", re.DOTALL)
_BACKREF_RE = re.compile(r"\$(\d{1,2}|&|\$)")
_FLAG_MAP = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}


class RegexScript(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    script_name: str = Field(alias="scriptName")
    find_regex: str = Field(alias="findRegex")
    replace_string: str = Field(alias="replaceString")
    trim_strings: list[str] = Field(default_factory=list, alias="trimStrings")
    placement: list[int] = Field(default_factory=list)
    disabled: bool = False
    markdown_only: bool = Field(default=False, alias="markdownOnly")
    prompt_only: bool = Field(default=False, alias="promptOnly")
    min_depth: int | None = Field(default=None, alias="minDepth")
    max_depth: int | None = Field(default=None, alias="maxDepth")


def extract_scripts(extensions: dict[str, Any]) -> list[RegexScript]:
    """Return the well-formed scripts from a card's extensions dict."""
    raw = extensions.get("regex_scripts")
    if not isinstance(raw, list):
        return []
    scripts: list[RegexScript] = []
    for item in raw:
        try:
            scripts.append(RegexScript.model_validate(item))
        except ValidationError as e:
            logger.warning("Malformed regex script skipped: %s", e.errors()[0]["msg"])
    return scripts


def parse_js_regex(source: str) -> tuple[re.Pattern, bool]:
    """Compile `/pattern/flags` (or a bare pattern). Returns (pattern, global)."""
    match = _JS_REGEX_RE.match(source)
    if not match:
        return re.compile(source), False
    pattern, js_flags = match.groups()
    flags = 0
    for flag in js_flags:
        flags |= _FLAG_MAP.get(flag, 0)
    return re.compile(pattern, flags), "g" in js_flags


def _expand(template: str, match: re.Match) -> str:
    def _ref(ref: re.Match) -> str:
        token = ref.group(1)
        if token == "$":
            return "$"
        if token == "&":
            return match.group(0)
        index = int(token)
        if index > (match.re.groups or 0):
            return ref.group(0)
        return match.group(index) or ""

    return _BACKREF_RE.sub(_ref, template)


class RegexScriptProcessor:
    def process(
        self,
        content: str,
        scripts: list[RegexScript],
        *,
        is_ai_message: bool = True,
        for_prompt: bool = False,
        is_markdown: bool = False,
        message_depth: int | None = None,
    ) -> str:
        result = content
        for script in scripts:
            if not _is_active(script, is_ai_message, for_prompt, is_markdown, message_depth):
                continue
            try:
                result = self._apply(result, script)
            except (re.error, IndexError) as e:
                logger.warning("Failed to apply regex script %r: %s", script.script_name, e)
        return result

    def _apply(self, content: str, script: RegexScript) -> str:
        pattern, is_global = parse_js_regex(script.find_regex)
        result = pattern.sub(
            lambda m: _expand(script.replace_string, m), content, count=0 if is_global else 1,
        )
        for trim in script.trim_strings:
            if trim:
                result = result.replace(trim, "")
        return result


def _is_active(
    script: RegexScript,
    is_ai_message: bool,
    for_prompt: bool,
    is_markdown: bool,
    message_depth: int | None,
) -> bool:
    if script.disabled:
        return False
    if script.placement:
        target = PLACEMENT_AI if is_ai_message else PLACEMENT_USER
        if target not in script.placement:
            return False
    if for_prompt:
        # Only scripts written for the outgoing prompt rewrite model input
        if not script.prompt_only:
            return False
    else:
        if script.prompt_only:
            return False
        if script.markdown_only and not is_markdown:
            return False
    if message_depth is not None:
        if script.min_depth is not None and message_depth < script.min_depth:
            return False
        if script.max_depth is not None and message_depth > script.max_depth:
            return False
    return True
