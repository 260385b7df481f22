"""
Tests for the interactive terminal session.

Tests cover:
1. A streamed turn followed by local commands
2. Interrupts and EOF at the prompt ending the session cleanly

Run with: pytest tests/test_cli.py -v
"""

import asyncio
from unittest.mock import patch

from astra.api import main as cli


# =============================================================================
# FIXTURES - Common test data
# =============================================================================

def scripted_prompt(*answers):
    """Replacement for `asyncio.to_thread(input, ...)` replaying `answers`."""
    pending = list(answers)

    async def fake_to_thread(func, *args, **kwargs):
        answer = pending.pop(0)
        if isinstance(answer, BaseException):
            raise answer
        return answer

    return fake_to_thread


def run_session(engine, *answers):
    with patch.object(cli.AssistantEngine, "from_env", return_value=engine), \
            patch.object(cli.asyncio, "to_thread", side_effect=scripted_prompt(*answers)):
        asyncio.run(cli.run_cli())


# =============================================================================
# SESSION
# =============================================================================

class TestSession:
    def test_turn_then_commands(self, engine, capsys):
        run_session(engine, "Hi", "/memories", "/reminders", "exit")

        out = capsys.readouterr().out
        assert "Astra: Hello there." in out
        assert "No memories stored." in out
        assert "You don't have any active reminders set." in out
        assert "Shutting down." in out

    def test_interrupt_at_prompt_ends_session(self, engine, capsys):
        run_session(engine, asyncio.CancelledError())
        assert "Session ended." in capsys.readouterr().out

    def test_eof_ends_session(self, engine, capsys):
        run_session(engine, EOFError())
        assert "Session ended." in capsys.readouterr().out
