"""
Tests for message swipes, session editing and the data models
"""

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from personachat.models import AppSettings, Character, ChatSession, Message


def _session(*contents):
    from personachat.sessions import new_message
    messages = [new_message('user' if i % 2 else 'model', c) for i, c in enumerate(contents)]
    return ChatSession(character_id="c1", messages=messages)


class TestMessageModel:
    """Tests for the Message record."""

    def test_content_follows_active_swipe(self):
        """Test that validation syncs content to the active swipe."""
        message = Message(role='model', content="stale", swipes=["a", "b"], current_index=1)

        assert message.content == "b"

    def test_out_of_range_index_clamped(self):
        """Test that a bad index is clamped on load."""
        message = Message(role='model', swipes=["a", "b"], current_index=7)

        assert message.current_index == 1
        assert message.content == "b"

    def test_camel_case_wire_format(self):
        """Test that records serialize with camelCase keys and load either way."""
        message = Message(role='model', content="x", swipes=["x"], current_index=0)
        data = message.to_json_dict()

        assert "currentIndex" in data
        assert Message.model_validate(data) == message
        assert Character.model_validate({"name": "Mira", "firstMessage": "Hi"}).first_message == "Hi"

    def test_unknown_fields_ignored(self):
        """Test that extra keys from newer clients do not fail validation."""
        character = Character.model_validate({"name": "Mira", "somethingNew": 1})

        assert character.name == "Mira"


class TestSwipes:
    """Tests for swipe navigation and edits."""

    def test_new_message_has_single_swipe(self):
        """Test that new messages start with one swipe."""
        from personachat.sessions import new_message

        message = new_message('model', "Hello")

        assert message.swipes == ["Hello"]
        assert message.current_index == 0

    def test_regenerate_opens_empty_swipe(self):
        """Test that regenerate appends and activates an empty swipe."""
        from personachat.sessions import append_continuation, begin_regenerate, new_message

        message = new_message('model', "First")
        begin_regenerate(message)
        append_continuation(message, "Second")

        assert message.swipes == ["First", "Second"]
        assert message.current_index == 1
        assert message.content == "Second"

    def test_swipe_left_and_right(self):
        """Test navigation keeps content in step with the index."""
        from personachat.sessions import swipe_message

        message = Message(role='model', swipes=["a", "b", "c"], current_index=1)

        swipe_message(message, 'left')
        assert (message.current_index, message.content) == (0, "a")

        swipe_message(message, 'left')
        assert (message.current_index, message.content) == (0, "a")

        swipe_message(message, 'right')
        swipe_message(message, 'right')
        swipe_message(message, 'right')
        assert (message.current_index, message.content) == (2, "c")

    def test_swipe_single_is_noop(self):
        """Test that a message with one swipe does not move."""
        from personachat.sessions import new_message, swipe_message

        message = new_message('model', "only")
        swipe_message(message, 'right')

        assert message.current_index == 0
        assert message.content == "only"

    def test_delete_swipe(self):
        """Test that deleting moves to the previous swipe."""
        from personachat.sessions import delete_swipe

        message = Message(role='model', swipes=["a", "b", "c"], current_index=2)
        delete_swipe(message)

        assert message.swipes == ["a", "b"]
        assert message.current_index == 1
        assert message.content == "b"

    def test_last_swipe_cannot_be_deleted(self):
        """Test that a message keeps at least one swipe."""
        from personachat.sessions import delete_swipe, new_message

        message = delete_swipe(new_message('model', "only"))

        assert message.swipes == ["only"]

    def test_edit_updates_active_swipe(self):
        """Test that edits write through to the active swipe."""
        from personachat.sessions import edit_message

        message = Message(role='model', swipes=["a", "b"], current_index=0)
        edit_message(message, "edited")

        assert message.swipes == ["edited", "b"]
        assert message.content == "edited"

    def test_edit_message_without_swipes(self):
        """Test that legacy messages gain a swipe list on first edit."""
        from personachat.sessions import edit_message

        message = Message(role='user', content="old")
        edit_message(message, "new")

        assert message.swipes == ["new"]
        assert message.current_index == 0


class TestSessionEditing:
    """Tests for session creation and message deletion."""

    def test_start_session_with_greeting(self):
        """Test that the first message is the character's greeting."""
        from personachat.sessions import start_session

        session = start_session(Character(id="c1", name="Mira", first_message="Welcome."))

        assert session.name == "Chat with Mira"
        assert session.character_id == "c1"
        assert [m.content for m in session.messages] == ["Welcome."]
        assert session.messages[0].role == 'model'

    def test_start_session_without_greeting(self):
        """Test that no empty opening message is added."""
        from personachat.sessions import start_session

        session = start_session(Character(name="Mira"), "Custom")

        assert session.name == "Custom"
        assert session.messages == []

    def test_first_message_cannot_be_deleted(self):
        """Test opening-message protection."""
        from personachat.sessions import delete_message

        session = _session("greeting", "hi", "reply")

        assert delete_message(session, session.messages[0].id) is False
        assert delete_message(session, "missing") is False
        assert delete_message(session, session.messages[2].id) is True
        assert [m.content for m in session.messages] == ["greeting", "hi"]

    def test_bulk_delete_skips_first(self):
        """Test that bulk delete never removes the opening message."""
        from personachat.sessions import delete_messages

        session = _session("greeting", "hi", "reply")
        removed = delete_messages(session, [m.id for m in session.messages])

        assert removed == 2
        assert [m.content for m in session.messages] == ["greeting"]

    def test_history_before(self):
        """Test the history slice used for regeneration."""
        from personachat.sessions import history_before

        session = _session("greeting", "hi", "reply")

        assert [m.content for m in history_before(session, session.messages[2].id)] == ["greeting", "hi"]


class TestSummaryBookkeeping:
    """Tests for incremental summary tracking."""

    def test_pending_without_marker(self):
        """Test that everything is pending before the first summary."""
        from personachat.sessions import messages_pending_summary

        session = _session("a", "b", "c")

        assert len(messages_pending_summary(session)) == 3

    def test_pending_after_marker(self):
        """Test that only messages after the marker are pending."""
        from personachat.sessions import apply_summary, messages_pending_summary

        session = _session("a", "b", "c")
        apply_summary(session, "Summary one.", session.messages[1].id)

        assert [m.content for m in messages_pending_summary(session)] == ["c"]

    def test_append_summary(self):
        """Test that incremental summaries are appended to the existing text."""
        from personachat.sessions import apply_summary

        session = _session("a")
        apply_summary(session, "First part.")
        apply_summary(session, "Second part.", append=True)

        assert session.summary == "First part.\n\nSecond part."


class TestContinuation:
    """Tests for continuing a cut-off reply."""

    def test_remaining_target(self):
        """Test that the minimum length shrinks by the existing text."""
        from personachat.sessions import continuation_settings

        settings = AppSettings(min_output_enabled=True, min_output_length=500)
        adjusted = continuation_settings(settings, 200)

        assert adjusted.min_output_enabled is True
        assert adjusted.min_output_length == 300
        assert settings.min_output_length == 500

    def test_target_already_met(self):
        """Test that the length requirement switches off once met."""
        from personachat.sessions import continuation_settings

        adjusted = continuation_settings(AppSettings(min_output_enabled=True, min_output_length=100), 400)

        assert adjusted.min_output_enabled is False
        assert adjusted.min_output_length == 0

    def test_continue_instruction(self):
        """Test the transient instruction message."""
        from personachat.sessions import CONTINUE_INSTRUCTION, continue_instruction_message

        message = continue_instruction_message()

        assert message.role == 'user'
        assert message.content == CONTINUE_INSTRUCTION


class TestPresets:
    """Tests for settings presets."""

    def test_apply_preset_keeps_lorebooks(self):
        """Test that presets never replace global lorebooks or the preset list."""
        from personachat.models import Lorebook, apply_preset, make_preset

        source = AppSettings(temperature=0.3, model_name="model-a")
        preset = make_preset(source, "Cold")

        target = AppSettings(temperature=1.2, global_lorebooks=[Lorebook(name="World")])
        merged = apply_preset(target, preset)

        assert merged.temperature == 0.3
        assert merged.model_name == "model-a"
        assert [lb.name for lb in merged.global_lorebooks] == ["World"]
        assert "globalLorebooks" not in preset.data
