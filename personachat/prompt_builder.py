"""
Prompt construction: the system context block, history trimming, and the
flat transcript templates used by the job-queue backend.

Everything here is deterministic for identical inputs (no clock, no random),
which is what lets the prompt tests compare whole strings.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from personachat.config_loader import CONFIG
from personachat.models import AppSettings, Character, Message
from personachat.tokens import estimate_tokens

logger = logging.getLogger(__name__)

BASE_SYSTEM_PROMPT = """You are a creative co-author in a fictional roleplay session.
Your goal is to embody the character {{char}} fully and help the user tell a compelling story.

GUIDELINES:
1. Stay strictly in character. Use the tone, mannerisms, and knowledge of {{char}}.
2. Drive the narrative forward. React dynamically to the user's actions.
3. This is a mature creative writing environment. You are permitted to depict visceral, graphic, adult, or intense themes if the narrative requires it.
4. Do not summarize, moralize, or lecture. Focus on sensory details and dialogue.
5. You are NOT an AI assistant. Do not mention your nature as an AI."""

CHARACTER_PROFILE_FIELDS = [
    # (attribute, label, multiline)
    ("tagline", "Tagline", False),
    ("appearance", "Appearance", False),
    ("personality", "Personality & Mindset", False),
    ("description", "Description", False),
    ("scenario", "Scenario", False),
    ("event_sequence", "Event Sequence / Plot Points", False),
    ("chat_examples", "Dialogue Examples", True),
    ("jailbreak", "Character Instructions", False),
]


def chars_per_word() -> int:
    return CONFIG["continuation"]["chars_per_word"]


def target_word_count(target_chars: int) -> int:
    """Word estimate for a character target (fixed five characters per word)."""
    per_word = chars_per_word()
    return -(-target_chars // per_word)


def _length_requirement_block(min_length: int) -> str:
    target_words = target_word_count(min_length)
    return f"""[OUTPUT LENGTH REQUIREMENT]:
You MUST write responses of AT LEAST {min_length} characters (approximately {target_words} words).
Do NOT write short responses. Expand your output with:
- Detailed sensory descriptions (sights, sounds, textures, scents)
- Character's internal thoughts and emotions
- Environmental details and atmosphere
- Rich dialogue with vocal cues and body language
- Progressive narrative development

If your response is too short, you will be asked to continue. Prevent this by writing sufficiently detailed responses from the start."""


def _character_profile_block(character: Character) -> str:
    lines = [f"Name: {character.name}"]
    for attr, label, multiline in CHARACTER_PROFILE_FIELDS:
        value = getattr(character, attr, None)
        if not value:
            continue
        if multiline:
            lines.append(f"{label}:\n{value}")
        else:
            lines.append(f"{label}: {value}")
    return "[Character Profile]\n" + "\n".join(lines)


def _user_profile_block(settings: AppSettings) -> str:
    return (
        "[User Profile]\n"
        f"Name: {settings.user_name}\n"
        f"Persona: {settings.user_persona or 'Unknown'}\n"
        f"(Note: The 'user' role in the chat represents {settings.user_name}. "
        "Address them as such if contextually appropriate.)"
    )


def build_system_context(
    character: Character,
    settings: AppSettings,
    lorebook_context: str = "",
    summary: str = "",
) -> str:
    """Compose the system instruction shared by every backend.

    Block order is fixed: base rules, length requirement, jailbreak, summary,
    world info, user profile, character profile, and the character's output
    style last so it sits closest to the conversation.
    """
    instructions = settings.system_prompt_override or BASE_SYSTEM_PROMPT
    instructions = instructions.replace("{{char}}", character.name)

    blocks = [instructions]

    if settings.min_output_enabled and settings.min_output_length > 0:
        blocks.append(_length_requirement_block(settings.min_output_length))

    if settings.jailbreak_override:
        blocks.append(f"[SYSTEM NOTE]: {settings.jailbreak_override}")

    if summary and summary.strip():
        blocks.append(
            "[PREVIOUS STORY SUMMARY / MEMORY]\n"
            f"{summary.strip()}\n"
            "(Use this summary to recall past events, but do not repeat it.)"
        )

    if lorebook_context:
        blocks.append(lorebook_context.strip())

    blocks.append(_user_profile_block(settings))
    blocks.append(_character_profile_block(character))

    if character.style:
        blocks.append(
            "[IMPORTANT OUTPUT INSTRUCTIONS]\n"
            f"{character.style}\n"
            "(Follow these style and length instructions strictly)"
        )

    return "\n\n".join(b.strip() for b in blocks if b and b.strip()).strip()


def trim_history(
    history: Sequence[Message],
    system_content: str,
    max_context_tokens: int,
    max_output_tokens: int,
) -> List[Message]:
    """Keep the newest messages that fit next to the system context.

    Walks backwards from the latest message, skipping system-role entries,
    and stops at the first message that would overflow the budget. Older
    messages are dropped whole; nothing is cut mid-message.
    """
    ctx = CONFIG["context"]
    available = max_context_tokens - max_output_tokens - estimate_tokens(system_content) - ctx["safety_buffer"]

    if available <= 0:
        logger.warning("[CONTEXT] System prompt is too large for the context window, sending only the latest message")
        return list(history[-1:])

    used = 0
    selected: List[Message] = []
    for msg in reversed(history):
        if msg.role == 'system':
            continue
        cost = estimate_tokens(msg.content) + ctx["message_overhead"]
        if used + cost > available:
            break
        selected.insert(0, msg)
        used += cost

    if len(selected) < len([m for m in history if m.role != 'system']):
        logger.info(f"[CONTEXT] Trimmed history to {len(selected)} messages ({used}/{available} tokens)")

    return selected


@dataclass(frozen=True)
class PromptTemplate:
    start: Callable[[str], str]
    end: Callable[[str], str]
    stop: List[str] = field(default_factory=list)


PROMPT_TEMPLATES: Dict[str, PromptTemplate] = {
    "chatml": PromptTemplate(
        start=lambda role: f"<|im_start|>{role}\n",
        end=lambda role: "<|im_end|>\n",
        stop=["<|im_end|>", "<|im_start|>"],
    ),
    "llama3": PromptTemplate(
        start=lambda role: f"<|start_header_id|>{role}<|end_header_id|>\n\n",
        end=lambda role: "<|eot_id|>\n",
        stop=["<|eot_id|>", "<|start_header_id|>"],
    ),
    "alpaca": PromptTemplate(
        start=lambda role: "" if role == "system" else ("### Instruction:\n" if role == "user" else "### Response:\n"),
        end=lambda role: "\n\n",
        stop=["### Instruction:", "### Response:"],
    ),
    "vicuna": PromptTemplate(
        start=lambda role: "SYSTEM: " if role == "system" else ("USER: " if role == "user" else "ASSISTANT: "),
        end=lambda role: "\n",
        stop=["USER:", "ASSISTANT:"],
    ),
    "mistral": PromptTemplate(
        start=lambda role: "[INST] " if role == "user" else "",
        end=lambda role: " [/INST]" if role == "user" else "</s>",
        stop=["</s>", "[INST]"],
    ),
    "plain": PromptTemplate(
        start=lambda role: "" if role == "system" else ("User: " if role == "user" else "Model: "),
        end=lambda role: "\n",
        stop=["User:", "\nUser:"],
    ),
}

DEFAULT_TEMPLATE = "chatml"


def get_template(name: Optional[str]) -> PromptTemplate:
    return PROMPT_TEMPLATES.get(name or DEFAULT_TEMPLATE, PROMPT_TEMPLATES[DEFAULT_TEMPLATE])


def format_transcript(
    history: Sequence[Message],
    character: Character,
    settings: AppSettings,
    system_content: str,
    max_context_tokens: Optional[int] = None,
) -> Tuple[str, List[str]]:
    """Render system block + trimmed history as one prompt string.

    Returns (prompt, stop_sequences). The transcript ends with an open
    assistant turn, or with "<character name>:" for the plain template.
    """
    if max_context_tokens is None:
        max_context_tokens = CONFIG["context"]["safe_context_limit"]
    template = get_template(settings.prompt_template)
    plain = settings.prompt_template == "plain"

    if plain:
        prefix = f"{system_content}\n\n"
    else:
        prefix = f"{template.start('system')}{system_content}{template.end('system')}"

    max_output = settings.max_output_tokens or 200
    trimmed = trim_history(history, prefix, max_context_tokens, max_output)

    parts = [prefix]
    for msg in trimmed:
        role = "assistant" if msg.role == "model" else "user"
        if plain:
            name = settings.user_name if msg.role == "user" else character.name
            parts.append(f"{name}: {msg.content}\n")
        else:
            parts.append(f"{template.start(role)}{msg.content}{template.end(role)}")

    if plain:
        parts.append(f"{character.name}:")
    else:
        parts.append(template.start("assistant"))

    return "".join(parts), list(template.stop)
