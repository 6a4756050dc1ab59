"""
Unified generation facade.

generate_response() is the single entry point for chat replies: it picks the
adapter for the configured provider, forwards every fragment as it arrives,
and then tops the reply up with continuation requests while it is shorter
than the configured minimum. Summarization, the connection test and
character drafts are built on the same adapters.
"""

import asyncio
import logging
from typing import AsyncIterator, Dict, List, Optional, Sequence

from personachat.cancellation import CancelToken
from personachat.config_loader import CONFIG
from personachat.errors import (
    ApiError, GenerationAborted, GenerationError, ModelNotFoundError, PermissionDeniedError,
)
from personachat.models import AppSettings, Character, Message
from personachat.prompt_builder import target_word_count
from personachat.providers import (
    ChatCompletionProvider, DraftRequest, JobQueueProvider, OpenAICompatibleProvider, Provider,
)

logger = logging.getLogger(__name__)

PROVIDERS: Dict[str, Provider] = {
    "chat_completion": ChatCompletionProvider(),
    "openai_compatible": OpenAICompatibleProvider(),
    "job_queue": JobQueueProvider(),
}

SUMMARY_SYSTEM_INSTRUCTION = (
    "You are an automated system. Output only the requested summary text without pleasantries."
)

SUMMARY_LENGTH_INSTRUCTIONS = {
    "short": "Summarize the events very concisely. Focus only on the absolute most critical plot points. Be brief.",
    "medium": "Provide a balanced summary covering key events and character dynamics without getting bogged down in minor details.",
    "detailed": "Provide a comprehensive and detailed summary. Include specific nuances, emotional context, and a thorough breakdown of the events.",
}

CHARACTER_DRAFT_PROMPT = """You are an expert character writer and world builder. Your task is to create a detailed character profile based on the user's request.
Output the result strictly as a valid JSON object. Do not wrap in markdown code blocks if possible, or use ```json.

The JSON structure must be:
{{
  "name": "Character Name",
  "tagline": "Short description",
  "description": "Full background and lore",
  "personality": "Psychological profile",
  "appearance": "Visual description",
  "firstMessage": "Initial greeting",
  "chatExamples": "Example dialogue",
  "scenario": "Current situation",
  "jailbreak": "Instructions for the AI model on how to play this character",
  "style": "Writing style instructions",
  "lorebooks": [ {{ "name": "...", "entries": [ {{ "keys": ["..."], "content": "..." }} ] }} ]{sequence_field}
}}

Length: {length}
{sequence_note}
"""


def select_provider(settings: AppSettings) -> Provider:
    """The only place a provider string turns into an adapter."""
    if settings.api_provider == "gemini":
        return PROVIDERS["chat_completion"]
    if settings.api_provider == "horde":
        return PROVIDERS["job_queue"]
    return PROVIDERS["openai_compatible"]


def continuation_directive(current_text: str, target_length: int) -> str:
    current_len = len(current_text)
    current_words = len(current_text.split())
    target_words = target_word_count(target_length)
    needed_chars = target_length - current_len
    needed_words = target_word_count(needed_chars)

    return f"""[CRITICAL SYSTEM INSTRUCTION - MANDATORY COMPLIANCE]:
Current output: {current_len} characters ({current_words} words)
REQUIRED MINIMUM: {target_length} characters ({target_words} words)
SHORTFALL: {needed_chars} characters ({needed_words} words)

YOU MUST CONTINUE writing from EXACTLY where you stopped. DO NOT:
- Repeat previous content
- Summarize what happened
- Add closing remarks
- Start a new scene

YOU MUST:
1. Continue the narrative seamlessly from the last sentence
2. Add at least {needed_words} more words of NEW content
3. Expand with rich sensory details, internal thoughts, dialogue, and action
4. Keep the same tone and perspective
5. Do NOT conclude until reaching {target_words} words minimum

BEGIN CONTINUATION NOW:]"""


def continuation_history(history: Sequence[Message], generated: str, target_length: int) -> List[Message]:
    return list(history) + [
        Message(role='model', content=generated),
        Message(role='user', content=continuation_directive(generated, target_length)),
    ]


async def generate_response(
    history: Sequence[Message],
    character: Character,
    settings: AppSettings,
    summary: str = "",
    cancel: Optional[CancelToken] = None,
) -> AsyncIterator[str]:
    """Stream a reply, continuing it until it meets the minimum length.

    Typed errors from the adapters propagate unchanged. Cancellation ends
    the stream quietly.
    """
    provider = select_provider(settings)
    cont = CONFIG["continuation"]
    total = ""

    try:
        async for fragment in provider.generate(history, character, settings, summary, cancel):
            if fragment:
                total += fragment
                yield fragment

        if not (settings.min_output_enabled and settings.min_output_length > 0):
            return

        target = int(settings.min_output_length)
        attempts = 0
        while total and len(total) < target and attempts < cont["max_attempts"]:
            if cancel is not None and cancel.cancelled:
                break
            shortfall = target - len(total)
            if shortfall < cont["min_shortfall_chars"]:
                break

            logger.info(f"[CONTINUE] Attempt {attempts + 1}: {len(total)}/{target} chars, shortfall {shortfall}")
            extended = continuation_history(history, total, target)

            added = False
            async for fragment in provider.generate(extended, character, settings, summary, cancel):
                if fragment:
                    total += fragment
                    added = True
                    yield fragment

            if not added:
                logger.info("[CONTINUE] Continuation returned no text, stopping")
                break
            attempts += 1
    except GenerationAborted:
        logger.info(f"[CONTINUE] Generation aborted after {len(total)} chars")
        return


async def test_connection(settings: AppSettings) -> bool:
    """Send a one-word ping. Typed errors propagate to the caller."""
    ping_character = Character(id="test-connection", name="System")
    history = [Message(id="test-msg", role='user', content="Ping")]
    ping_settings = settings.model_copy(update={"max_output_tokens": 5, "global_lorebooks": []})

    stream = generate_response(history, ping_character, ping_settings)
    try:
        async for _fragment in stream:
            break
    finally:
        await stream.aclose()
    return True


def build_summary_prompt(messages: Sequence[Message], previous_summary: Optional[str], detail_level: str) -> str:
    transcript = "\n".join(f"{m.role}: {m.content}" for m in messages)
    length_instruction = SUMMARY_LENGTH_INSTRUCTIONS.get(detail_level, SUMMARY_LENGTH_INSTRUCTIONS["medium"])

    if previous_summary:
        return (
            "You are maintaining a memory log for a roleplay.\n\n"
            f"Existing Memory Context:\n\"{previous_summary}\"\n\n"
            f"New Dialogue to Process:\n{transcript}\n\n"
            "Task: Summarize ONLY the events in the \"New Dialogue\" to append to the log. "
            f"Do not rewrite the Existing Memory. {length_instruction}"
        )
    return (
        "Summarize the following roleplay chat history to serve as long-term memory.\n\n"
        f"Instructions: {length_instruction}\n\n"
        f"Chat History:\n{transcript}"
    )


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, ApiError) and exc.status_code in (429, 503):
        return True
    message = str(exc)
    return "503" in message or "429" in message or "busy" in message


def _is_model_access(exc: Exception) -> bool:
    if isinstance(exc, (ModelNotFoundError, PermissionDeniedError)):
        return True
    message = str(exc)
    return "404" in message or "403" in message


async def summarize_chat(
    messages: Sequence[Message],
    settings: AppSettings,
    previous_summary: Optional[str] = None,
    detail_level: str = "medium",
) -> str:
    """Summarize messages for long-term memory. Returns "" if every attempt fails."""
    cfg = CONFIG["summarization"]
    fallback_model = CONFIG["providers"]["gemini_fallback_model"]

    summarizer = Character(id="system_summarizer", name="System", jailbreak=SUMMARY_SYSTEM_INSTRUCTION)
    summary_settings = settings.model_copy(update={
        "system_prompt_override": SUMMARY_SYSTEM_INSTRUCTION,
        "max_output_tokens": cfg["max_output_tokens"],
        "min_output_enabled": False,
        "stream_response": False,
    })
    prompt = Message(id="summary_prompt", role='user',
                     content=build_summary_prompt(messages, previous_summary, detail_level))

    attempts = 0
    while attempts < cfg["max_attempts"]:
        try:
            text = ""
            async for fragment in generate_response([prompt], summarizer, summary_settings):
                text += fragment
            return text.strip()
        except GenerationError as exc:
            attempts += 1

            if (_is_model_access(exc) and settings.api_provider == "gemini"
                    and summary_settings.model_name != fallback_model):
                logger.warning(
                    f"[SUMMARY] Model {summary_settings.model_name} failed, falling back to {fallback_model}"
                )
                summary_settings = summary_settings.model_copy(update={"model_name": fallback_model})
                continue

            if _is_transient(exc) and attempts < cfg["max_attempts"]:
                delay = cfg["backoff_seconds"] * attempts
                logger.info(f"[SUMMARY] Transient failure ({exc}), retrying in {delay}s")
                await asyncio.sleep(delay)
                continue

            logger.error(f"[SUMMARY] Summarization failed: {exc}")
            return ""
    return ""


def build_draft_prompt(detail_level: str, include_sequence: bool = False, detailed_sequence: bool = False) -> str:
    return CHARACTER_DRAFT_PROMPT.format(
        sequence_field=',\n  "eventSequence": "List of events"' if include_sequence else "",
        length=detail_level,
        sequence_note="Include a detailed event sequence." if detailed_sequence else "",
    )


async def generate_character_draft(
    prompt: str,
    detail_level: str,
    settings: AppSettings,
    files: Optional[List[Dict[str, str]]] = None,
    previous_output: Optional[str] = None,
    include_sequence: bool = False,
    cancel: Optional[CancelToken] = None,
    detailed_sequence: bool = False,
) -> AsyncIterator[str]:
    """Stream a character definition as JSON text.

    With previous_output the model is asked to pick up where an earlier,
    truncated draft stopped.
    """
    cfg = CONFIG["character_generation"]
    request = DraftRequest(
        system_prompt=build_draft_prompt(detail_level, include_sequence, detailed_sequence),
        user_content=f"[CONTINUE GENERATION FROM]: {previous_output}" if previous_output else prompt,
        max_output_tokens=cfg.get(detail_level, cfg["short"]),
        temperature=cfg["temperature"],
        files=files,
    )
    logger.info(f"[CHARGEN] Drafting character ({detail_level}) via {settings.api_provider}")

    provider = select_provider(settings)
    try:
        async for fragment in provider.generate_draft(request, settings, cancel):
            if fragment:
                yield fragment
    except GenerationAborted:
        logger.info("[CHARGEN] Draft generation aborted")
        return
