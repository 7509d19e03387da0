import pytest

import agent_session
from agent_session import SYSTEM_PROMPT_APPENDIX, SessionRequest, SessionStreamError, build_agent_options, run_single_turn
from sdk_messages import assistant, result, text, thinking


async def _allow(*_args, **_kwargs):
    return None


def test_session_options_use_the_claude_code_tool_preset():
    options = build_agent_options(
        SessionRequest(prompt="hi", cwd="/work", can_use_tool=_allow, resume="sess-1")
    )

    assert options.tools == {"type": "preset", "preset": "claude_code"}
    assert options.system_prompt == {"type": "preset", "preset": "claude_code", "append": SYSTEM_PROMPT_APPENDIX}
    assert options.cwd == "/work"
    assert options.resume == "sess-1"
    assert options.permission_mode == "default"
    assert options.include_partial_messages is True
    assert options.can_use_tool is _allow


class _QueryRecorder:
    def __init__(self, messages, error=None):
        self.messages = messages
        self.error = error
        self.calls = []

    async def __call__(self, *, prompt, options):
        self.calls.append((prompt, options))
        for message in self.messages:
            yield message
        if self.error is not None:
            raise self.error


async def test_single_turn_summary_runs_without_tools(monkeypatch):
    recorder = _QueryRecorder(
        [assistant(thinking("hmm"), text("## Overview\n"), text("Done.")), result()]
    )
    monkeypatch.setattr(agent_session, "query", recorder)

    summary = await run_single_turn("Summarize this")

    assert summary == "## Overview\nDone."
    prompt, options = recorder.calls[0]
    assert prompt == "Summarize this"
    assert options.max_turns == 1
    assert options.tools == []


async def test_single_turn_failure_raises_stream_error(monkeypatch):
    monkeypatch.setattr(agent_session, "query", _QueryRecorder([], error=RuntimeError("cli crashed")))

    with pytest.raises(SessionStreamError, match="cli crashed"):
        await run_single_turn("Summarize this")
