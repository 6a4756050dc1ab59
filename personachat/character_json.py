"""
Recovering character definitions from model output.

Models asked for a JSON character card often wrap it in prose or code
fences, leave raw newlines inside strings, add trailing commas or comments,
or get cut off. extract_character_json() tries an ordered list of parse
strategies and, when every one fails, salvages individual fields.
"""

import json
import logging
import re
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from personachat.models import Character

logger = logging.getLogger(__name__)

KNOWN_FIELDS = [
    "name", "tagline", "description", "appearance", "personality",
    "scenario", "eventSequence", "firstMessage", "chatExamples",
    "jailbreak", "avatarUrl", "lorebooks", "style",
]

FIELD_ALIASES = {
    "name": ["name", "char_name", "ch_name", "character_name"],
    "tagline": ["tagline", "creator_notes", "short_description", "title"],
    "description": ["description", "char_persona", "personality_description"],
    "personality": ["personality", "mind", "psychological_profile"],
    "appearance": ["appearance", "visual_description", "looks"],
    "firstMessage": ["firstMessage", "first_mes", "initial_message", "greeting"],
    "chatExamples": ["chatExamples", "mes_example", "example_dialogue", "examples"],
    "scenario": ["scenario", "setting", "current_situation"],
    "jailbreak": ["jailbreak", "system_prompt", "post_history_instructions", "system_instruction"],
    "style": ["style", "writing_style", "narrative_style", "style_guide"],
    "avatarUrl": ["avatarUrl", "avatar", "image", "profile_image"],
    "eventSequence": ["eventSequence", "event_sequence", "plot_points", "events"],
}

CODE_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
QUOTED_STRING_RE = re.compile(r'"((?:[^"\\]|\\.)*)"')
TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
COMMENT_RE = re.compile(r"/\*[\s\S]*?\*/|([^\\:]|^)//.*$", re.MULTILINE)


def strip_code_fence(text: str) -> str:
    processed = text.strip()
    match = CODE_FENCE_RE.search(processed)
    if match:
        return match.group(1)
    return processed


def _loads(text: str) -> Optional[Any]:
    try:
        result = json.loads(text)
    except json.JSONDecodeError:
        return None
    return result if isinstance(result, (dict, list)) else None


def parse_direct(text: str) -> Optional[Any]:
    return _loads(text)


def parse_escaped_newlines(text: str) -> Optional[Any]:
    def _escape(match):
        return '"' + match.group(1).replace("\n", "\\n").replace("\r", "") + '"'
    return _loads(QUOTED_STRING_RE.sub(_escape, text))


def parse_without_trailing_commas(text: str) -> Optional[Any]:
    return _loads(TRAILING_COMMA_RE.sub(r"\1", text))


def parse_without_comments(text: str) -> Optional[Any]:
    return _loads(COMMENT_RE.sub(lambda m: m.group(1) or "", text))


PARSE_STRATEGIES: List[Callable[[str], Optional[Any]]] = [
    parse_direct,
    parse_escaped_newlines,
    parse_without_trailing_commas,
    parse_without_comments,
]


def try_strategies(text: str) -> Optional[Any]:
    for strategy in PARSE_STRATEGIES:
        result = strategy(text)
        if result is not None:
            return result
    return None


def _unescape_lenient(value: str) -> str:
    try:
        return json.loads(f'"{value}"')
    except json.JSONDecodeError:
        return value.replace('\\"', '"').replace("\\n", "\n").replace("\\t", "\t")


def salvage_fields(text: str) -> Optional[Dict[str, str]]:
    """Pull `"field": "value"` pairs out of JSON too broken to parse.

    A value runs until the next known field label or the end of the object,
    so unescaped quotes inside it survive.
    """
    next_key = "|".join(KNOWN_FIELDS)
    extracted = {}
    for key in KNOWN_FIELDS:
        pattern = re.compile(
            rf'"{key}"\s*:\s*"(.*?)"(?=\s*(?:,\s*"(?:{next_key})"\s*:|}}\s*$))',
            re.DOTALL,
        )
        match = pattern.search(text)
        if match and match.group(1):
            extracted[key] = _unescape_lenient(match.group(1))
    return extracted or None


def extract_character_json(text: str) -> Optional[Any]:
    """Best-effort parse of a character object out of raw model output.

    Returns the parsed object (a dict, or a list for array-wrapped output),
    a partial dict of salvaged fields, or None.
    """
    processed = strip_code_fence(text)
    result = try_strategies(processed)
    if result is not None:
        return result

    first_open = text.find("{")
    last_close = text.rfind("}")
    if first_open != -1 and last_close > first_open:
        result = try_strategies(text[first_open:last_close + 1])
        if result is not None:
            return result

    salvaged = salvage_fields(processed)
    if salvaged:
        logger.info(f"[CHARGEN] Salvaged {len(salvaged)} fields from malformed JSON")
    return salvaged


def _pick(data: Dict[str, Any], keys: List[str]) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _flatten_events(events: List[Any]) -> str:
    items = []
    for item in events:
        if isinstance(item, str):
            items.append(item)
        elif isinstance(item, dict):
            items.append(
                item.get("event") or item.get("description") or item.get("content")
                or item.get("text") or json.dumps(item)
            )
        else:
            items.append(str(item))
    return "\n\n".join(items)


def normalize_character_data(raw: Any, existing: Optional[Character] = None) -> Dict[str, Any]:
    """Map an extracted object onto camelCase Character fields.

    Unwraps an array, a "character" wrapper, or a "data" wrapper (the last only
    when the outer object has no name). Fields that were not found are left
    out, so the result can be laid over an existing character.
    """
    result = raw
    if isinstance(result, list):
        result = result[0] if result else {}
    if not isinstance(result, dict):
        return {}
    if isinstance(result.get("character"), dict) and result["character"]:
        result = result["character"]
    if isinstance(result.get("data"), dict) and result["data"] and not result.get("name"):
        result = result["data"]

    mapped = {field: _pick(result, aliases) for field, aliases in FIELD_ALIASES.items()}

    if not mapped["avatarUrl"] and existing is not None:
        mapped["avatarUrl"] = existing.avatar_url
    if isinstance(mapped["eventSequence"], list):
        mapped["eventSequence"] = _flatten_events(mapped["eventSequence"])

    lorebooks = result.get("lorebooks")
    if lorebooks:
        mapped["lorebooks"] = lorebooks
    elif existing is not None:
        mapped["lorebooks"] = [lb.to_json_dict() for lb in existing.lorebooks]

    return {k: v for k, v in mapped.items() if v is not None}


def apply_character_data(existing: Character, data: Dict[str, Any]) -> Character:
    merged = existing.to_json_dict()
    merged.update(data)
    return Character.model_validate(merged)


class JsonObjectTracker:
    """Find where the top-level JSON object closes in a stream of text.

    Text before the first "{" is ignored; braces inside strings do not count.
    """

    def __init__(self):
        self.started = False
        self.balance = 0
        self.in_string = False
        self.escaped = False

    def feed(self, chunk: str) -> Optional[int]:
        """Consume chunk; return the index of the closing brace if the object closed in it."""
        for i, char in enumerate(chunk):
            if not self.started:
                if char == "{":
                    self.started = True
                    self.balance = 1
                continue

            if self.in_string:
                if self.escaped:
                    self.escaped = False
                elif char == "\\":
                    self.escaped = True
                elif char == '"':
                    self.in_string = False
            elif char == '"':
                self.in_string = True
            elif char == "{":
                self.balance += 1
            elif char == "}":
                self.balance -= 1

            if self.balance <= 0 and not self.in_string:
                return i
        return None


async def stream_character_object(
    fragments: AsyncIterator[str],
    previous_output: Optional[str] = None,
) -> AsyncIterator[str]:
    """Forward a draft stream, stopping right after the object's closing brace."""
    tracker = JsonObjectTracker()
    if previous_output:
        tracker.feed(previous_output)

    try:
        async for chunk in fragments:
            end = tracker.feed(chunk)
            if end is None:
                yield chunk
                continue
            yield chunk[:end + 1]
            logger.debug("[CHARGEN] JSON object closed, ending draft stream")
            return
    finally:
        aclose = getattr(fragments, "aclose", None)
        if aclose is not None:
            await aclose()
