"""Tests for JSON object extraction from model text."""

import json

from episode_forge.llm.jsonscan import extract_first_json_object, find_json_object_span


class TestJsonScan:
    """Test the first-object scanner."""

    def test_plain_object(self):
        assert extract_first_json_object('{"a": 1}') == '{"a": 1}'

    def test_prose_and_fences_around_object(self):
        text = 'Sure! Here it is:\n```json\n{"passed": true, "issues": []}\n```\nAnything else?'
        assert json.loads(extract_first_json_object(text)) == {"passed": True, "issues": []}

    def test_nested_braces(self):
        text = 'x {"a": {"b": {"c": 1}}, "d": [ {"e": 2} ]} trailing {"f": 3}'
        assert json.loads(extract_first_json_object(text)) == {
            "a": {"b": {"c": 1}},
            "d": [{"e": 2}],
        }

    def test_braces_inside_strings_ignored(self):
        text = '{"episode_content": "She drew a } and a { in the dust."}'
        assert extract_first_json_object(text) == text

    def test_escaped_quotes(self):
        text = r'{"line": "He said \"no {way}\" twice", "n": 2} tail'
        parsed = json.loads(extract_first_json_object(text))
        assert parsed["n"] == 2
        assert parsed["line"] == 'He said "no {way}" twice'

    def test_escaped_backslash_before_quote(self):
        text = r'{"path": "C:\\", "ok": true}'
        assert json.loads(extract_first_json_object(text)) == {"path": "C:\\", "ok": True}

    def test_truncated_object_returns_none(self):
        assert extract_first_json_object('{"episode_content": "Mina opened the door and') is None

    def test_no_object(self):
        assert extract_first_json_object("I cannot help with that.") is None
        assert extract_first_json_object("") is None

    def test_span_is_exclusive(self):
        text = 'ab{"k": 1}cd'
        start, end = find_json_object_span(text)
        assert text[start:end] == '{"k": 1}'
