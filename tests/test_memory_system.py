"""
Tests for the memory store merge.

Tests cover:
1. canonical_key - identity normalization
2. merge_memories - add/update/delete order, dedupe, collisions, images
3. normalize_memory_text - narration stripping and user-name subject
4. parse_delta_output / parse_memory_delta - per-field decoding
5. memory_status - user-facing outcome derivation

Run with: pytest tests/test_memory_system.py -v
"""

import pytest

from astra.memory.memory_system import (
    MemoryDelta,
    MemoryEntry,
    MemoryUpdate,
    MergeCounts,
    canonical_key,
    memory_status,
    merge_memories,
    normalize_memory_delta,
    normalize_memory_text,
    parse_delta_output,
    parse_memory_delta,
    status_message,
)


# =============================================================================
# FIXTURES - Common test data
# =============================================================================

@pytest.fixture
def rex_entry():
    return MemoryEntry(text="The user adopted a dog named Rex")


def keys(entries):
    return [entry.key for entry in entries]


# =============================================================================
# CANONICAL KEY
# =============================================================================

class TestCanonicalKey:
    def test_lowercases_and_collapses_punctuation(self):
        assert canonical_key("The user's dog:  Rex!") == "the user s dog rex"

    def test_empty_and_punctuation_only(self):
        assert canonical_key("") == ""
        assert canonical_key("?!...") == ""

    def test_underscores_are_separators(self):
        assert canonical_key("likes_green__tea") == "likes green tea"

    def test_equivalent_strings_share_key(self):
        assert canonical_key("Likes tea.") == canonical_key("likes   TEA")


# =============================================================================
# MERGE
# =============================================================================

class TestMergeMemories:
    def test_add_new_memory(self):
        entries, counts = merge_memories([], MemoryDelta(add=["Likes tea"]))
        assert [e.text for e in entries] == ["Likes tea"]
        assert counts.added == 1

    def test_add_existing_key_is_dropped(self, rex_entry):
        delta = MemoryDelta(add=["the user adopted a dog named rex."])
        entries, counts = merge_memories([rex_entry], delta)
        assert len(entries) == 1
        assert entries[0].text == rex_entry.text
        assert counts.added == 0
        assert memory_status(delta, counts) == "already_known"

    def test_duplicate_adds_in_one_delta_collapse(self):
        entries, counts = merge_memories([], MemoryDelta(add=["Likes tea", "likes TEA!"]))
        assert len(entries) == 1
        assert counts.added == 1

    def test_update_rewrites_in_place_and_keeps_id(self, rex_entry):
        delta = MemoryDelta(update=[MemoryUpdate(old=rex_entry.text, new="The user adopted a dog named Max")])
        entries, counts = merge_memories([rex_entry], delta)
        assert len(entries) == 1
        assert entries[0].text == "The user adopted a dog named Max"
        assert entries[0].id == rex_entry.id
        assert counts.updated == 1

    def test_update_matches_by_key_not_exact_text(self, rex_entry):
        delta = MemoryDelta(update=[MemoryUpdate(old="the user adopted a dog named REX.", new="Dog is Max")])
        entries, _ = merge_memories([rex_entry], delta)
        assert entries[0].text == "Dog is Max"

    def test_update_without_match_is_noop(self, rex_entry):
        delta = MemoryDelta(update=[MemoryUpdate(old="Unknown fact", new="Other fact")])
        entries, counts = merge_memories([rex_entry], delta)
        assert [e.text for e in entries] == [rex_entry.text]
        assert not counts.changed

    def test_unchanged_update_does_not_count(self, rex_entry):
        delta = MemoryDelta(update=[MemoryUpdate(old=rex_entry.text, new=rex_entry.text)])
        _, counts = merge_memories([rex_entry], delta)
        assert counts.updated == 0

    def test_update_collision_removes_other_entry(self):
        tea = MemoryEntry(text="Likes tea")
        coffee = MemoryEntry(text="Likes coffee")
        delta = MemoryDelta(update=[MemoryUpdate(old="Likes tea", new="likes coffee!")])

        entries, counts = merge_memories([tea, coffee], delta)

        assert len(entries) == 1
        assert entries[0].id == tea.id
        assert entries[0].text == "likes coffee!"
        assert counts.updated == 1
        assert counts.deleted == 1

    def test_delete_removes_every_entry_with_key(self):
        entries = [MemoryEntry(text="Likes tea"), MemoryEntry(text="likes tea")]
        result, counts = merge_memories(entries, MemoryDelta(delete=["Likes tea."]))
        assert result == []
        assert counts.deleted == 2

    def test_delete_runs_before_add(self):
        entries = [MemoryEntry(text="Likes tea")]
        result, counts = merge_memories(entries, MemoryDelta(add=["Likes tea"], delete=["Likes tea"]))
        assert [e.text for e in result] == ["Likes tea"]
        assert result[0].id != entries[0].id
        assert counts.deleted == 1
        assert counts.added == 1

    def test_result_has_unique_keys(self):
        entries = [
            MemoryEntry(text="Lives in Austin"),
            MemoryEntry(text="Works as a nurse"),
            MemoryEntry(text="Has a cat"),
        ]
        delta = MemoryDelta(
            add=["Works as a nurse.", "Plays chess", "plays chess"],
            update=[
                MemoryUpdate(old="Lives in Austin", new="Has a cat"),
                MemoryUpdate(old="Works as a nurse", new="Works as a doctor"),
            ],
            delete=["Nothing matches this"],
        )

        result, _ = merge_memories(entries, delta)

        assert len(keys(result)) == len(set(keys(result)))

    def test_input_list_not_mutated(self, rex_entry):
        original = [rex_entry]
        merge_memories(original, MemoryDelta(update=[MemoryUpdate(old=rex_entry.text, new="Changed")]))
        assert original[0].text == "The user adopted a dog named Rex"

    def test_image_attached_to_added_and_updated(self, rex_entry):
        delta = MemoryDelta(
            add=["Has a red bike"],
            update=[MemoryUpdate(old=rex_entry.text, new="The user adopted a dog named Max")],
        )
        result, _ = merge_memories([rex_entry], delta, image=b"img")
        assert all(entry.image == b"img" for entry in result)

    def test_empty_keys_ignored(self):
        result, counts = merge_memories([], MemoryDelta(add=["...", ""], delete=["!!"]))
        assert result == []
        assert not counts.changed


# =============================================================================
# NORMALIZATION
# =============================================================================

class TestNormalization:
    def test_strips_narration_prefix(self):
        assert normalize_memory_text("Astra remembers that the user likes tea") == "the user likes tea"

    def test_rewrites_subject_with_user_name(self):
        assert normalize_memory_text("The user's dog is Rex", "Sam") == "Sam's dog is Rex"
        assert normalize_memory_text("The user likes tea", "Sam") == "Sam likes tea"

    def test_keeps_subject_without_name(self):
        assert normalize_memory_text("The user likes tea", "") == "The user likes tea"

    def test_delta_drops_empty_items(self):
        delta = MemoryDelta(
            add=["  ", "Likes tea"],
            update=[MemoryUpdate(old="", new="x"), MemoryUpdate(old="a", new="b")],
            delete=[""],
        )
        normalized = normalize_memory_delta(delta)
        assert normalized.add == ["Likes tea"]
        assert normalized.update == [MemoryUpdate(old="a", new="b")]
        assert normalized.delete == []


# =============================================================================
# DECODING
# =============================================================================

class TestDecoding:
    def test_parse_delta_output_with_prose(self):
        raw = 'Sure!\n{"add": ["Likes tea"], "update": [], "delete": []}\nDone.'
        delta = parse_delta_output(raw)
        assert delta.add == ["Likes tea"]

    def test_parse_delta_output_invalid_raises(self):
        with pytest.raises(ValueError):
            parse_delta_output("I could not decide")

    def test_malformed_fields_decode_to_empty(self):
        delta = parse_memory_delta({
            "add": "not a list",
            "update": [{"old": "a"}, "bad", {"old": "x", "new": "y"}],
            "delete": [1, None, "gone"],
        })
        assert delta.add == []
        assert delta.update == [MemoryUpdate(old="x", new="y")]
        assert delta.delete == ["gone"]

    def test_non_dict_is_empty(self):
        assert parse_memory_delta(["add"]).is_empty()


# =============================================================================
# STATUS
# =============================================================================

class TestMemoryStatus:
    def test_none_for_empty_delta(self):
        assert memory_status(MemoryDelta(), MergeCounts()) == "none"
        assert status_message("none") == ""

    def test_saved_for_additions_only(self):
        assert memory_status(MemoryDelta(add=["x"]), MergeCounts(added=1)) == "saved"
        assert status_message("saved") == "Memory saved."

    def test_updated_for_update_or_delete(self):
        assert memory_status(MemoryDelta(delete=["x"]), MergeCounts(deleted=1)) == "updated"
        assert memory_status(MemoryDelta(add=["y"]), MergeCounts(added=1, updated=1)) == "updated"
        assert status_message("updated") == "Memory updated."

    def test_already_known(self):
        assert memory_status(MemoryDelta(add=["x"]), MergeCounts()) == "already_known"
        assert status_message("already_known") == "Already remembered."
