"""
Tests for the memory consistency reviewer.

Tests cover:
1. parse_consistency_verdict - verbatim memory filtering, malformed output
2. ConsistencyReviewer.revise_reply_if_needed - skip rules, one revision pass,
   failures keep the draft, cancellation

Run with: pytest tests/test_consistency.py -v
"""

import asyncio
import json

import pytest

from astra.core.consistency import ConsistencyReviewer, parse_consistency_verdict
from astra.core.lifecycle import CancellationToken, ReplyCancelledError
from tests.fakes import FakeAI


# =============================================================================
# FIXTURES - Common test data
# =============================================================================

MEMORIES = ["The user is vegetarian", "The user lives in Austin"]
BASE_MESSAGES = [
    {"role": "system", "content": "You are Astra."},
    {"role": "user", "content": "What should I cook?"},
]


def conflict(*memories: str) -> str:
    return json.dumps({"conflicts": True, "conflicting_memories": list(memories), "reason": "diet"})


@pytest.fixture
def reviewer_ai():
    return FakeAI()


@pytest.fixture
def reviewer(reviewer_ai):
    return ConsistencyReviewer(reviewer_ai, "check-m", "key")


def revise(reviewer, draft, memories=MEMORIES, token=None):
    return asyncio.run(reviewer.revise_reply_if_needed(
        draft,
        "What should I cook?",
        memories,
        "text-m",
        BASE_MESSAGES,
        token,
    ))


# =============================================================================
# VERDICT PARSING
# =============================================================================

class TestParseVerdict:
    def test_keeps_only_verbatim_memories(self):
        verdict = parse_consistency_verdict(conflict(" The user is vegetarian ", "Made up memory"), MEMORIES)
        assert verdict.conflicts is True
        assert verdict.conflicting_memories == ["The user is vegetarian"]

    def test_conflict_without_known_memories_is_ignored(self):
        verdict = parse_consistency_verdict(conflict("Made up memory"), MEMORIES)
        assert verdict.conflicts is False
        assert verdict.conflicting_memories == []

    def test_string_true_is_not_a_conflict(self):
        raw = json.dumps({"conflicts": "true", "conflicting_memories": ["The user is vegetarian"]})
        assert parse_consistency_verdict(raw, MEMORIES).conflicts is False

    def test_malformed_output(self):
        assert parse_consistency_verdict("no idea", MEMORIES).conflicts is False


# =============================================================================
# REVISION
# =============================================================================

class TestReviseReply:
    def test_no_memories_skips_check(self, reviewer, reviewer_ai):
        assert revise(reviewer, "Steak!", memories=[]) == "Steak!"
        assert reviewer_ai.classify_calls == []

    def test_no_conflict_keeps_draft(self, reviewer, reviewer_ai):
        assert revise(reviewer, "Try a lentil curry.") == "Try a lentil curry."
        assert len(reviewer_ai.calls_for("check")) == 1
        assert reviewer_ai.calls_for("other") == []

    def test_conflict_triggers_one_revision(self, reviewer, reviewer_ai):
        reviewer_ai.check_outputs.append(conflict("The user is vegetarian"))
        reviewer_ai.other_outputs.append("  Try a mushroom risotto.  ")

        assert revise(reviewer, "Try a steak.") == "Try a mushroom risotto."

        role, model, messages = reviewer_ai.calls_for("other")[0]
        assert model == "text-m"
        assert messages[1]["content"].startswith("Memories that must be respected")
        assert "- The user is vegetarian" in messages[1]["content"]
        assert messages[-2] == {"role": "assistant", "content": "Try a steak."}
        assert "<<<DRAFT\nTry a steak.\nDRAFT>>>" in messages[-1]["content"]
        assert len(reviewer_ai.calls_for("check")) == 1

    def test_check_failure_keeps_draft(self, reviewer, reviewer_ai):
        reviewer_ai.check_outputs.append(RuntimeError("down"))
        assert revise(reviewer, "Try a steak.") == "Try a steak."

    def test_revision_failure_keeps_draft(self, reviewer, reviewer_ai):
        reviewer_ai.check_outputs.append(conflict("The user is vegetarian"))
        reviewer_ai.other_outputs.append(RuntimeError("down"))
        assert revise(reviewer, "Try a steak.") == "Try a steak."

    def test_empty_revision_keeps_draft(self, reviewer, reviewer_ai):
        reviewer_ai.check_outputs.append(conflict("The user is vegetarian"))
        reviewer_ai.other_outputs.append("   ")
        assert revise(reviewer, "Try a steak.") == "Try a steak."

    def test_cancelled_during_check(self, reviewer, reviewer_ai):
        token = CancellationToken("reply")

        def cancel_then_answer(messages):
            token.cancel()
            return conflict("The user is vegetarian")

        reviewer_ai.check_outputs.append(cancel_then_answer)

        with pytest.raises(ReplyCancelledError):
            revise(reviewer, "Try a steak.", token=token)
        assert reviewer_ai.calls_for("other") == []
