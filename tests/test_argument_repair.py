"""Tests for tool-call argument repair."""

import json

import pytest

from app.models.errors import MalformedArguments
from app.tools.arguments import repair_arguments, split_top_level_objects


class TestRepairArguments:
    """Tests for the argument repair cascade."""

    @pytest.mark.parametrize("raw", [None, "", "   ", '""', "''"])
    def test_blank_input_is_an_empty_object(self, raw):
        """Test that missing or blank arguments repair to {}."""
        assert repair_arguments(raw) == {}

    def test_valid_object_parses_directly(self):
        """Test that well-formed JSON is returned unchanged."""
        assert repair_arguments('{"title": "Groceries", "content": "milk"}') == {
            "title": "Groceries",
            "content": "milk",
        }

    def test_raw_newline_inside_string_is_stripped(self):
        """Test that unescaped control characters no longer break parsing."""
        assert repair_arguments('{"title": "Shopping\nlist"}') == {"title": "Shoppinglist"}

    def test_concatenated_objects_are_merged(self):
        """Test that back-to-back objects are shallow-merged."""
        assert repair_arguments('{"title": "A"}{"content": "B"}') == {"title": "A", "content": "B"}

    def test_concatenated_objects_later_keys_win(self):
        """Test that the later object wins on key conflicts."""
        assert repair_arguments('{"title": "first"} {"title": "second"}') == {"title": "second"}

    def test_concatenated_objects_with_overlapping_keys(self):
        """Test the merge of two objects that share a key, each with its own extras."""
        assert repair_arguments('{"a":"1"}{"a":"2","b":"3"}') == {"a": "2", "b": "3"}

    @pytest.mark.parametrize(
        "raw",
        [
            '{"title": "Groceries", "content": "milk"}',
            '{"title": "Shopping\nlist"}',
            '{"a":"1"}{"a":"2","b":"3"}',
            'Sure, here you go: {"note": "groceries"} hope that helps',
            '"{\\"note\\": \\"inbox\\"}"',
            '{"title": "Nested", "meta": {"tags": ["x", "y"]}}',
            "",
        ],
    )
    def test_repairing_a_repaired_object_changes_nothing(self, raw):
        """Test that re-serializing a repaired object and repairing it again is stable."""
        repaired = repair_arguments(raw)

        assert repair_arguments(json.dumps(repaired)) == repaired

    def test_object_wrapped_in_prose_is_recovered(self):
        """Test that the outer brace span is used as a last resort."""
        assert repair_arguments('Sure, here you go: {"note": "groceries"} hope that helps') == {
            "note": "groceries"
        }

    def test_double_encoded_object(self):
        """Test that an object encoded as a JSON string is unwrapped."""
        assert repair_arguments('"{\\"note\\": \\"inbox\\"}"') == {"note": "inbox"}

    def test_array_is_rejected(self):
        """Test that a non-object value is not accepted as arguments."""
        with pytest.raises(MalformedArguments):
            repair_arguments("[1, 2, 3]")

    def test_garbage_raises_with_raw_text(self):
        """Test that unrepairable input raises and keeps the raw text."""
        with pytest.raises(MalformedArguments) as exc_info:
            repair_arguments("definitely not json")

        assert exc_info.value.raw == "definitely not json"
        assert exc_info.value.error_type == "MalformedArguments"


class TestSplitTopLevelObjects:
    """Tests for splitting concatenated objects."""

    def test_braces_inside_strings_are_ignored(self):
        """Test that braces within string values do not split objects."""
        assert split_top_level_objects('{"a": "}{"}{"b": 1}') == ['{"a": "}{"}', '{"b": 1}']

    def test_nested_objects_stay_whole(self):
        """Test that nested objects belong to their top-level span."""
        assert split_top_level_objects('{"a": {"b": 1}}{"c": 2}') == ['{"a": {"b": 1}}', '{"c": 2}']
