"""
World info (lorebook) trigger matching.

Scans the most recent messages for lorebook keywords and returns the bodies
of the entries that fired. Matching is a case-insensitive literal substring
test, so the key "blood" fires on "Bloodline".
"""

import logging
from typing import Iterable, List, Optional, Sequence

from personachat.config_loader import CONFIG
from personachat.models import AppSettings, Character, Lorebook, LorebookEntry, Message

logger = logging.getLogger(__name__)

WORLD_INFO_HEADER = "[World Info / Context]"


def active_entries(lorebooks: Iterable[Lorebook]) -> List[LorebookEntry]:
    """Enabled entries of enabled lorebooks, in lorebook order."""
    entries = []
    for lorebook in lorebooks:
        if not lorebook.enabled:
            continue
        entries.extend(e for e in lorebook.entries if e.enabled)
    return entries


def entry_triggered(entry: LorebookEntry, haystack: str) -> bool:
    for key in entry.keys:
        k = key.strip().lower()
        if k and k in haystack:
            return True
    return False


def match_entries(scan_text: str, entries: Sequence[LorebookEntry]) -> List[LorebookEntry]:
    """Entries with at least one key inside scan_text, each entry id at most once."""
    haystack = scan_text.lower()
    triggered = []
    seen_ids = set()
    for entry in entries:
        if entry.id in seen_ids:
            continue
        if entry_triggered(entry, haystack):
            triggered.append(entry)
            seen_ids.add(entry.id)
    return triggered


def scan_window_text(history: Sequence[Message], window: Optional[int] = None) -> str:
    if window is None:
        window = CONFIG["context"]["world_info_scan_window"]
    recent = history[-window:] if window > 0 else []
    return " ".join(m.content.lower() for m in recent)


def get_lorebook_context(history: Sequence[Message], character: Character, settings: AppSettings) -> str:
    """Build the world info block for the prompt.

    Character lorebooks are consulted before global ones. Returns an empty
    string when nothing fires so the caller can leave the block out.
    """
    entries = active_entries(list(character.lorebooks) + list(settings.global_lorebooks))
    if not entries:
        return ""

    triggered = match_entries(scan_window_text(history), entries)
    if not triggered:
        return ""

    logger.debug(f"[WORLD_INFO] {len(triggered)} entries triggered: {[e.id for e in triggered]}")
    return f"{WORLD_INFO_HEADER}\n" + "\n\n".join(e.content for e in triggered)


def parse_lorebook_import(data, name: str = "Imported Lorebook") -> Optional[Lorebook]:
    """Build a lorebook from an imported JSON document.

    Accepts {"entries": ...}, {"data": ...} or a bare list; entries may be a
    list or a dict of entries. Each entry needs keys ("keys" or "key", list or
    comma-separated string) and content.
    """
    if isinstance(data, list):
        raw_entries = data
        description = "Imported Lorebook"
    elif isinstance(data, dict):
        raw_entries = data.get("entries") or data.get("data") or []
        description = data.get("name") or "Imported Lorebook"
    else:
        return None

    if isinstance(raw_entries, dict):
        raw_entries = list(raw_entries.values())

    entries = []
    for raw in raw_entries:
        if not isinstance(raw, dict):
            continue
        keys = raw.get("keys") or raw.get("key")
        content = raw.get("content")
        if not keys or not content:
            continue
        if isinstance(keys, str):
            keys = [k.strip() for k in keys.split(",")]
        entries.append(LorebookEntry(
            keys=[str(k) for k in keys],
            content=content,
            enabled=raw.get("enabled", True) is not False,
        ))

    if not entries:
        return None

    return Lorebook(name=name, description=description, entries=entries, enabled=True)

