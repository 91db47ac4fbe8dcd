"""Tests for chara_prompt.regex_scripts."""

import re

import pytest

from chara_prompt.regex_scripts import RegexScript, RegexScriptProcessor, extract_scripts, parse_js_regex


def _script(**overrides) -> RegexScript:
    fields = {"scriptName": "s", "findRegex": "/cat/g", "replaceString": "dog"}
    fields.update(overrides)
    return RegexScript.model_validate(fields)


@pytest.fixture
def processor() -> RegexScriptProcessor:
    return RegexScriptProcessor()


class TestParseJsRegex:
    def test_flags(self) -> None:
        pattern, is_global = parse_js_regex("/abc/gi")
        assert is_global is True
        assert pattern.flags & re.IGNORECASE

    def test_bare_pattern(self) -> None:
        pattern, is_global = parse_js_regex("abc")
        assert pattern.pattern == "abc"
        assert is_global is False


class TestProcess:
    def test_global_replaces_all(self, processor: RegexScriptProcessor) -> None:
        assert processor.process("cat cat", [_script()]) == "dog dog"

    def test_non_global_replaces_first(self, processor: RegexScriptProcessor) -> None:
        assert processor.process("cat cat", [_script(findRegex="/cat/")]) == "dog cat"

    def test_backreferences(self, processor: RegexScriptProcessor) -> None:
        script = _script(findRegex="/(\\w+)@(\\w+)/g", replaceString="$2 at $1 ($&) $$")
        assert processor.process("me@home", [script]) == "home at me (me@home) $"

    def test_trim_strings(self, processor: RegexScriptProcessor) -> None:
        script = _script(trimStrings=["!"])
        assert processor.process("cat!!", [script]) == "dog"

    def test_disabled_skipped(self, processor: RegexScriptProcessor) -> None:
        assert processor.process("cat", [_script(disabled=True)]) == "cat"

    def test_placement_filters_target(self, processor: RegexScriptProcessor) -> None:
        user_only = _script(placement=[2])
        assert processor.process("cat", [user_only], is_ai_message=True) == "cat"
        assert processor.process("cat", [user_only], is_ai_message=False) == "dog"

    def test_prompt_only_skipped_for_display(self, processor: RegexScriptProcessor) -> None:
        assert processor.process("cat", [_script(promptOnly=True)]) == "cat"

    def test_prompt_mode_applies_prompt_only(self, processor: RegexScriptProcessor) -> None:
        assert processor.process("cat", [_script(promptOnly=True)], for_prompt=True) == "dog"
        assert processor.process("cat", [_script()], for_prompt=True) == "cat"

    def test_markdown_only(self, processor: RegexScriptProcessor) -> None:
        script = _script(markdownOnly=True)
        assert processor.process("cat", [script]) == "cat"
        assert processor.process("cat", [script], is_markdown=True) == "dog"

    def test_depth_bounds(self, processor: RegexScriptProcessor) -> None:
        script = _script(minDepth=1, maxDepth=2)
        assert processor.process("cat", [script], message_depth=0) == "cat"
        assert processor.process("cat", [script], message_depth=1) == "dog"
        assert processor.process("cat", [script], message_depth=3) == "cat"

    def test_invalid_regex_skipped(self, processor: RegexScriptProcessor, caplog) -> None:
        scripts = [_script(findRegex="/([/g"), _script()]
        assert processor.process("cat", scripts) == "dog"
        assert "Failed to apply regex script" in caplog.text


class TestExtractScripts:
    def test_valid_scripts_kept(self) -> None:
        extensions = {"regex_scripts": [
            {"scriptName": "a", "findRegex": "/x/", "replaceString": "y"},
            {"scriptName": "broken"},
        ]}
        scripts = extract_scripts(extensions)
        assert [s.script_name for s in scripts] == ["a"]

    def test_missing_or_wrong_type(self) -> None:
        assert extract_scripts({}) == []
        assert extract_scripts({"regex_scripts": "nope"}) == []
