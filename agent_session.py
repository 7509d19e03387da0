"""
Thin adaptation layer over claude_agent_sdk.

AgentSession runs one streaming query through ClaudeSDKClient so it can be
interrupted mid-turn; run_single_turn runs a tool-free one-shot query() for
summaries. Both capture the CLI's stderr so failures carry its diagnostics.
"""
import asyncio
import dataclasses
import io
import logging
import os
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient, query
from claude_agent_sdk.types import AssistantMessage, TextBlock

logger = logging.getLogger(__name__)

_DEFAULT_SETTING_SOURCES = ("project",)
_PERMISSION_MODE = "default"
_TOOLS_PRESET = {"type": "preset", "preset": "claude_code"}
_SOURCE_DIR = os.path.dirname(os.path.abspath(__file__))

SYSTEM_PROMPT_APPENDIX = f"""# Nexia Context

You are a Claude Code instance running inside **Nexia**, a web UI that wraps the Claude Agent SDK. The user is chatting with you through Nexia's browser interface, not the CLI directly.

- You have full Claude Code tools (file ops, bash, search, subagents, etc.)
- Nexia's source code is at `{_SOURCE_DIR}`; you can read and edit it
- The user may need to restart Nexia and refresh the browser after source changes"""

CanUseTool = Callable[..., Awaitable[Any]]


@dataclasses.dataclass
class SessionRequest:
    prompt: str
    cwd: str
    can_use_tool: CanUseTool
    system_prompt_append: str = SYSTEM_PROMPT_APPENDIX
    resume: Optional[str] = None


def build_agent_options(request: SessionRequest) -> ClaudeAgentOptions:
    return ClaudeAgentOptions(
        cwd=request.cwd,
        tools=dict(_TOOLS_PRESET),
        system_prompt={
            "type": "preset",
            "preset": "claude_code",
            "append": request.system_prompt_append,
        },
        permission_mode=_PERMISSION_MODE,
        can_use_tool=request.can_use_tool,
        include_partial_messages=True,
        resume=request.resume,
        setting_sources=list(_DEFAULT_SETTING_SOURCES),
    )


def _format_query_error(*, stderr_text: str, exc: Exception) -> str:
    stderr_text = (stderr_text or "").strip()
    if stderr_text:
        return stderr_text
    return str(exc)


class SessionStreamError(RuntimeError):
    """Raised for any failure while a session is connecting or streaming."""

    def __init__(self, *, stderr_text: str, exc: Exception):
        super().__init__(_format_query_error(stderr_text=stderr_text, exc=exc))
        self.stderr_text = (stderr_text or "").strip()
        self.original = exc


class AgentSession:
    """One query against a ClaudeSDKClient.

    Use as an async context manager: entering connects and sends the prompt,
    leaving disconnects. messages() yields SDK messages up to the terminal result.
    """

    def __init__(self, request: SessionRequest):
        self.request = request
        self._stderr = io.StringIO()
        self._options = dataclasses.replace(build_agent_options(request), debug_stderr=self._stderr)
        self._client: Optional[ClaudeSDKClient] = None

    async def __aenter__(self) -> "AgentSession":
        self._client = ClaudeSDKClient(self._options)
        try:
            await self._client.connect()
            await self._client.query(self.request.prompt)
        except asyncio.CancelledError:
            await self._disconnect()
            raise
        except Exception as e:
            await self._disconnect()
            raise SessionStreamError(stderr_text=self._stderr.getvalue(), exc=e) from e
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self._disconnect()

    async def _disconnect(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.disconnect()
        except Exception:
            logger.exception("Failed to disconnect agent session")
        stderr_text = self._stderr.getvalue().strip()
        if stderr_text:
            logger.debug("SDK stderr: %s", stderr_text)

    async def messages(self) -> AsyncIterator[Any]:
        if self._client is None:
            raise RuntimeError("Session is not connected")
        try:
            async for msg in self._client.receive_response():
                yield msg
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise SessionStreamError(stderr_text=self._stderr.getvalue(), exc=e) from e

    async def interrupt(self) -> None:
        if self._client is not None:
            await self._client.interrupt()


def open_session(request: SessionRequest) -> AgentSession:
    return AgentSession(request)


async def _collect_query_events(
    *,
    prompt: str,
    options: ClaudeAgentOptions,
) -> tuple[list[Any], Optional[SessionStreamError]]:
    stderr_buf = io.StringIO()
    opts = dataclasses.replace(options, debug_stderr=stderr_buf)
    events: list[Any] = []
    try:
        async for msg in query(prompt=prompt, options=opts):
            events.append(msg)
    except Exception as e:
        return events, SessionStreamError(stderr_text=stderr_buf.getvalue(), exc=e)
    return events, None


async def run_single_turn(prompt: str) -> str:
    """Run a single-turn query and return the last assistant text."""
    options = ClaudeAgentOptions(max_turns=1, tools=[])
    events, err = await _collect_query_events(prompt=prompt, options=options)
    if err:
        raise err

    text = ""
    for msg in events:
        if isinstance(msg, AssistantMessage):
            text = "".join(block.text for block in msg.content if isinstance(block, TextBlock))
    return text
