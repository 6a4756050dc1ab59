"""
Tests for recovering character JSON from model output
"""

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from personachat.models import Character, Lorebook


async def _collect(stream):
    return [chunk async for chunk in stream]


class TestExtraction:
    """Tests for extract_character_json parse strategies."""

    def test_code_fence(self):
        """Test that fenced JSON is unwrapped."""
        from personachat.character_json import extract_character_json

        text = 'Here you go:\n```json\n{"name": "Mira"}\n```\nEnjoy!'

        assert extract_character_json(text) == {"name": "Mira"}

    def test_raw_newlines_in_strings(self):
        """Test that literal newlines inside strings are escaped."""
        from personachat.character_json import extract_character_json

        text = '{"name": "Mira", "description": "Line one\nLine two"}'

        assert extract_character_json(text)["description"] == "Line one\nLine two"

    def test_trailing_commas(self):
        """Test that trailing commas are removed."""
        from personachat.character_json import extract_character_json

        text = '{"name": "Mira", "lorebooks": [],}'

        assert extract_character_json(text) == {"name": "Mira", "lorebooks": []}

    def test_comments(self):
        """Test that line comments are stripped."""
        from personachat.character_json import extract_character_json

        text = '{\n  // the character name\n  "name": "Mira"\n}'

        assert extract_character_json(text) == {"name": "Mira"}

    def test_prose_around_object(self):
        """Test the outermost-braces fallback."""
        from personachat.character_json import extract_character_json

        text = 'Sure! {"name": "Mira", "tagline": "Cartographer"} Hope this helps.'

        assert extract_character_json(text) == {"name": "Mira", "tagline": "Cartographer"}

    def test_salvage_unescaped_quotes(self):
        """Test field salvage when quotes inside a value break the JSON."""
        from personachat.character_json import extract_character_json

        text = '{"name": "Mira", "tagline": "She said "hi" loudly", "description": "Tall"}'
        result = extract_character_json(text)

        assert result == {"name": "Mira", "tagline": 'She said "hi" loudly', "description": "Tall"}

    def test_nothing_recoverable(self):
        """Test that plain prose yields None."""
        from personachat.character_json import extract_character_json

        assert extract_character_json("I cannot help with that.") is None

    def test_array_output(self):
        """Test that array-wrapped output is returned as a list."""
        from personachat.character_json import extract_character_json

        assert extract_character_json('[{"name": "Mira"}]') == [{"name": "Mira"}]


class TestNormalization:
    """Tests for mapping extracted objects onto character fields."""

    def test_aliases_and_wrapper(self):
        """Test the "character" wrapper and alternate field names."""
        from personachat.character_json import normalize_character_data

        raw = {"character": {"char_name": "Mira", "first_mes": "Hi", "writing_style": "Terse"}}
        data = normalize_character_data(raw)

        assert data == {"name": "Mira", "firstMessage": "Hi", "style": "Terse"}

    def test_data_wrapper_only_without_outer_name(self):
        """Test that "data" is unwrapped only when the outer object has no name."""
        from personachat.character_json import normalize_character_data

        assert normalize_character_data({"data": {"name": "Inner"}})["name"] == "Inner"
        assert normalize_character_data({"name": "Outer", "data": {"name": "Inner"}})["name"] == "Outer"

    def test_event_list_flattened(self):
        """Test that an event list becomes blank-line separated text."""
        from personachat.character_json import normalize_character_data

        data = normalize_character_data({"name": "Mira", "plot_points": ["Storm", {"event": "Fire"}]})

        assert data["eventSequence"] == "Storm\n\nFire"

    def test_first_array_element(self):
        """Test that a list takes its first element."""
        from personachat.character_json import normalize_character_data

        assert normalize_character_data([{"name": "Mira"}, {"name": "Other"}]) == {"name": "Mira"}
        assert normalize_character_data([]) == {}

    def test_existing_avatar_and_lorebooks_kept(self):
        """Test that an update keeps the current avatar and lorebooks."""
        from personachat.character_json import apply_character_data, normalize_character_data

        existing = Character(name="Old", avatar_url="avatar.png", lorebooks=[Lorebook(name="World")])
        data = normalize_character_data({"name": "New", "tagline": "Fresh"}, existing)
        updated = apply_character_data(existing, data)

        assert updated.id == existing.id
        assert updated.name == "New"
        assert updated.tagline == "Fresh"
        assert updated.avatar_url == "avatar.png"
        assert [lb.name for lb in updated.lorebooks] == ["World"]


class TestObjectTracker:
    """Tests for finding the end of a streamed JSON object."""

    def test_brace_inside_string_ignored(self):
        """Test that braces inside strings do not close the object."""
        from personachat.character_json import JsonObjectTracker

        tracker = JsonObjectTracker()

        assert tracker.feed('prefix {"a": "}"') is None
        assert tracker.feed("} trailing") == 0

    def test_nested_objects(self):
        """Test that nested braces are balanced."""
        from personachat.character_json import JsonObjectTracker

        assert JsonObjectTracker().feed('{"a": {"b": 1}} tail') == 14

    def test_escaped_quote(self):
        """Test that an escaped quote does not end the string."""
        from personachat.character_json import JsonObjectTracker

        tracker = JsonObjectTracker()

        assert tracker.feed('{"a": "x\\"}"}') == 12


class TestDraftStream:
    """Tests for cutting a draft stream at the closing brace."""

    @pytest.mark.asyncio
    async def test_stops_after_object(self):
        """Test that text after the object is dropped and the source closed."""
        from personachat.character_json import stream_character_object

        state = {"closed": False}

        async def source():
            try:
                yield 'Here: {"name": '
                yield '"Mira"} extra'
                yield "never"
            finally:
                state["closed"] = True

        chunks = await _collect(stream_character_object(source()))

        assert "".join(chunks) == 'Here: {"name": "Mira"}'
        assert state["closed"] is True

    @pytest.mark.asyncio
    async def test_resumes_from_previous_output(self):
        """Test that a continued draft is tracked from the earlier text."""
        from personachat.character_json import stream_character_object

        async def source():
            yield 'ra"} more'

        chunks = await _collect(stream_character_object(source(), previous_output='{"name": "Mi'))

        assert chunks == ['ra"}']
