"""
Message and session helpers.

A message's content always mirrors its active swipe: content ==
swipes[current_index]. Every helper that touches swipes updates both, and
mutates the message or session it is given in place.
"""

import logging
from typing import Iterable, List, Optional

from personachat.models import AppSettings, Character, ChatSession, Message, now_ms

logger = logging.getLogger(__name__)

CONTINUE_INSTRUCTION = (
    "[Instruction: The previous message was cut off mid-sentence. Please finish the sentence "
    "and complete the immediate thought or action. Do not restart the description. "
    "Do not repeat text. Keep the continuation concise.]"
)


def new_message(role: str, content: str) -> Message:
    return Message(role=role, content=content, swipes=[content], current_index=0)


def start_session(character: Character, session_name: Optional[str] = None) -> ChatSession:
    session = ChatSession(
        character_id=character.id,
        name=session_name or f"Chat with {character.name}",
    )
    if character.first_message:
        session.messages.append(new_message('model', character.first_message))
    return session


def _ensure_swipes(message: Message) -> List[str]:
    if not message.swipes:
        message.swipes = [message.content]
        message.current_index = 0
    return message.swipes


def set_active_swipe_text(message: Message, text: str) -> Message:
    swipes = _ensure_swipes(message)
    swipes[message.current_index or 0] = text
    message.content = text
    return message


def edit_message(message: Message, new_content: str) -> Message:
    return set_active_swipe_text(message, new_content)


def append_continuation(message: Message, fragment: str) -> Message:
    return set_active_swipe_text(message, message.content + fragment)


def begin_regenerate(message: Message) -> Message:
    """Open a fresh, empty swipe and make it the active one."""
    swipes = _ensure_swipes(message)
    swipes.append("")
    message.current_index = len(swipes) - 1
    message.content = ""
    return message


def swipe_message(message: Message, direction: str) -> Message:
    if not message.swipes or len(message.swipes) <= 1:
        return message
    current = message.current_index or 0
    target = current - 1 if direction == 'left' else current + 1
    if target < 0 or target >= len(message.swipes):
        return message
    message.current_index = target
    message.content = message.swipes[target]
    return message


def delete_swipe(message: Message) -> Message:
    if not message.swipes or len(message.swipes) <= 1:
        return message
    current = message.current_index or 0
    del message.swipes[current]
    message.current_index = max(0, current - 1)
    message.content = message.swipes[message.current_index]
    return message


def find_message_index(session: ChatSession, message_id: str) -> int:
    for i, msg in enumerate(session.messages):
        if msg.id == message_id:
            return i
    return -1


def delete_message(session: ChatSession, message_id: str) -> bool:
    """Remove a message. The opening message of a session cannot be deleted."""
    index = find_message_index(session, message_id)
    if index <= 0:
        return False
    del session.messages[index]
    session.last_updated = now_ms()
    return True


def delete_messages(session: ChatSession, message_ids: Iterable[str]) -> int:
    """Remove several messages, skipping the opening one. Returns how many went."""
    ids = set(message_ids)
    if session.messages and session.messages[0].id in ids:
        ids.discard(session.messages[0].id)
    before = len(session.messages)
    session.messages = [m for m in session.messages if m.id not in ids]
    removed = before - len(session.messages)
    if removed:
        session.last_updated = now_ms()
    return removed


def messages_pending_summary(session: ChatSession) -> List[Message]:
    if not session.last_summarized_message_id:
        return list(session.messages)
    index = find_message_index(session, session.last_summarized_message_id)
    return list(session.messages[index + 1:]) if index >= 0 else list(session.messages)


def apply_summary(
    session: ChatSession,
    summary: str,
    last_message_id: Optional[str] = None,
    append: bool = False,
) -> ChatSession:
    if append and session.summary:
        session.summary = f"{session.summary.rstrip()}\n\n{summary.strip()}"
    else:
        session.summary = summary
    if last_message_id:
        session.last_summarized_message_id = last_message_id
    session.last_updated = now_ms()
    return session


def history_before(session: ChatSession, message_id: str) -> List[Message]:
    index = find_message_index(session, message_id)
    if index < 0:
        return list(session.messages)
    return list(session.messages[:index])


def continue_instruction_message() -> Message:
    return Message(id="temp-sys-continue", role='user', content=CONTINUE_INSTRUCTION)


def continuation_settings(settings: AppSettings, current_length: int) -> AppSettings:
    """Lower the minimum-length target by what the message already holds."""
    target = settings.min_output_length if settings.min_output_enabled else 0
    remaining = max(0, target - current_length)
    return settings.model_copy(update={
        "min_output_enabled": remaining > 0,
        "min_output_length": remaining,
    })
