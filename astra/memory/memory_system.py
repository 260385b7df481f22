"""Long-term memory store and its deduplicating merge algorithm.

Architectural role:
    Holds the user's remembered facts as plain text entries and applies the
    add/update/delete deltas proposed by the memory-update model call in
    `astra.core.engine`.

Identity model:
    Entries are matched only by their canonical key (`canonical_key`): lowercased,
    every run of non-alphanumeric characters collapsed to one space, trimmed. Two
    strings with the same key are the same memory.

Merge order:
    1. Deletes remove every entry with a matching key.
    2. Updates rewrite the first entry matching `old`, then remove any other entry
       that now shares `new`'s key (counted as deletions).
    3. Adds append only when no entry already has the key.

Invariant:
    After `merge_memories`, no two entries share a canonical key, provided the input
    list did not contain duplicates that the delta never touches.

Determinism:
    Fully deterministic. Entry ids come from `uuid4` on add.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any

from astra.nlp.model_output import load_json_object


logger = logging.getLogger(__name__)


NARRATION_PREFIXES = (
    "astra remembers that ",
    "the assistant remembers that ",
)

STATUS_MESSAGES = {
    "saved": "Memory saved.",
    "updated": "Memory updated.",
    "already_known": "Already remembered.",
}


def canonical_key(text: str) -> str:
    """Return the identity key used for memory matching.

    Args:
        text: Raw memory text.

    Returns:
        Lowercased text with non-alphanumeric runs collapsed to single spaces.

    Edge cases:
        - Empty or punctuation-only input returns `""`.
        - Underscores count as separators.
    """
    if not text:
        return ""
    text = str(text).lower()
    text = re.sub(r"[\W_]+", " ", text)
    return " ".join(text.split())


@dataclass
class MemoryEntry:
    """One stored memory.

    Attributes:
        id: Stable identifier.
        text: Memory text as shown to the user and injected into prompts.
        image: Optional image bytes attached when the memory was saved.
    """

    text: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    image: bytes | None = None

    @property
    def key(self) -> str:
        return canonical_key(self.text)


@dataclass
class MemoryUpdate:
    old: str
    new: str


@dataclass
class MemoryDelta:
    """Changes proposed by the memory-update model call."""

    add: list[str] = field(default_factory=list)
    update: list[MemoryUpdate] = field(default_factory=list)
    delete: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.add or self.update or self.delete)


@dataclass
class MergeCounts:
    added: int = 0
    updated: int = 0
    deleted: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated or self.deleted)


def parse_memory_delta(data: Any) -> MemoryDelta:
    """Decode a memory-update JSON object field by field.

    Args:
        data: Parsed JSON (expected dict with `add`, `update`, `delete`).

    Returns:
        `MemoryDelta`; malformed fields decode to empty lists.

    Edge cases:
        - Update items must be objects with string `old` and `new`.
        - Non-string list items are skipped.
    """
    if not isinstance(data, dict):
        return MemoryDelta()

    def strings(value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, str)]

    updates: list[MemoryUpdate] = []
    raw_updates = data.get("update")
    if isinstance(raw_updates, list):
        for item in raw_updates:
            if not isinstance(item, dict):
                continue
            old = item.get("old")
            new = item.get("new")
            if isinstance(old, str) and isinstance(new, str):
                updates.append(MemoryUpdate(old=old, new=new))

    return MemoryDelta(
        add=strings(data.get("add")),
        update=updates,
        delete=strings(data.get("delete")),
    )


def normalize_memory_text(text: str, user_name: str = "") -> str:
    """Strip narration and rewrite a leading "the user" into the user's name.

    Args:
        text: Memory text proposed by the model.
        user_name: Display name of the user, empty when unknown.

    Returns:
        Cleaned memory text (possibly empty).

    Examples:
        - `"Astra remembers that the user likes tea"` -> `"the user likes tea"`
        - with `user_name="Sam"`: `"The user's dog is Rex"` -> `"Sam's dog is Rex"`
    """
    cleaned = (text or "").strip()
    lowered = cleaned.lower()
    for prefix in NARRATION_PREFIXES:
        if lowered.startswith(prefix):
            cleaned = cleaned[len(prefix):].strip()
            lowered = cleaned.lower()
            break

    name = (user_name or "").strip()
    if name:
        if lowered.startswith("the user's "):
            cleaned = f"{name}'s " + cleaned[len("the user's "):]
        elif lowered.startswith("the user "):
            cleaned = f"{name} " + cleaned[len("the user "):]

    return cleaned.strip()


def normalize_memory_delta(delta: MemoryDelta, user_name: str = "") -> MemoryDelta:
    """Apply `normalize_memory_text` to every delta item and drop empty ones."""
    add = [normalize_memory_text(text, user_name) for text in delta.add]
    delete = [normalize_memory_text(text, user_name) for text in delta.delete]
    updates = []
    for item in delta.update:
        old = normalize_memory_text(item.old, user_name)
        new = normalize_memory_text(item.new, user_name)
        if old and new:
            updates.append(MemoryUpdate(old=old, new=new))
    return MemoryDelta(
        add=[text for text in add if text],
        update=updates,
        delete=[text for text in delete if text],
    )


def merge_memories(
    entries: list[MemoryEntry],
    delta: MemoryDelta,
    image: bytes | None = None,
) -> tuple[list[MemoryEntry], MergeCounts]:
    """Apply a memory delta and return the new entry list with change counts.

    Args:
        entries: Current memories. Not mutated; updated entries are copies.
        delta: Normalized delta from the memory-update call.
        image: Optional image attached to the current turn. Attached to updated
            and added entries.

    Returns:
        Tuple `(new_entries, counts)`.

    Important behavior:
        - Delete removes all entries with the key, which heals stores that already
          hold duplicates.
        - Update with no matching `old` is a no-op.
        - Update whose text is unchanged does not count as an update.
        - Add of an existing key is dropped silently.
    """
    result = [
        MemoryEntry(text=entry.text, id=entry.id, image=entry.image)
        for entry in entries
    ]
    counts = MergeCounts()

    for text in delta.delete:
        key = canonical_key(text)
        if not key:
            continue
        before = len(result)
        result = [entry for entry in result if entry.key != key]
        counts.deleted += before - len(result)

    for item in delta.update:
        old_key = canonical_key(item.old)
        new_key = canonical_key(item.new)
        if not old_key or not new_key:
            continue

        target = next((entry for entry in result if entry.key == old_key), None)
        if target is None:
            continue

        if target.text != item.new:
            target.text = item.new
            if image is not None:
                target.image = image
            counts.updated += 1

        before = len(result)
        result = [
            entry for entry in result
            if entry is target or entry.key != new_key
        ]
        counts.deleted += before - len(result)

    for text in delta.add:
        key = canonical_key(text)
        if not key:
            continue
        if any(entry.key == key for entry in result):
            continue
        result.append(MemoryEntry(text=text, image=image))
        counts.added += 1

    logger.info(
        "Memory merge: added=%d updated=%d deleted=%d total=%d",
        counts.added,
        counts.updated,
        counts.deleted,
        len(result),
    )
    return result, counts


def memory_status(delta: MemoryDelta, counts: MergeCounts) -> str:
    """Derive the user-facing memory outcome.

    Returns:
        - `none`: the delta was empty.
        - `already_known`: the delta had content but nothing changed.
        - `updated`: at least one update or delete happened.
        - `saved`: only additions happened.
    """
    if delta.is_empty():
        return "none"
    if not counts.changed:
        return "already_known"
    if counts.updated or counts.deleted:
        return "updated"
    return "saved"


def status_message(status: str) -> str:
    """Return the acknowledgement sentence for a status, `""` for `none`."""
    return STATUS_MESSAGES.get(status, "")


def parse_delta_output(raw: str) -> MemoryDelta:
    """Parse raw model text into a delta, tolerating surrounding prose.

    Raises:
        ValueError: When no JSON object can be decoded.
    """
    data = load_json_object(raw)
    if data is None:
        raise ValueError("Memory update returned output that wasn't valid JSON.")
    return parse_memory_delta(data)
