"""
Translation of one agent session's SDK message stream into browser events.

The SDK interleaves partial stream events (content block start/delta/stop), whole
assistant turns, user turns carrying tool results, progress/summary notices and a
terminal result. EventTranslator consumes them one at a time and returns the
ServerEvents to emit, in order. It performs no I/O; persisting assistant turns is
left to the caller, which sees them as AssistantMessageEvent.

Alongside the events it keeps the conversation as the browser would render it:
a list of ChatMessageItem whose last entry is a pending assistant message while
the turn is still streaming.
"""
import dataclasses
import json
import logging
import uuid
from typing import Any, Optional

from claude_agent_sdk import types as sdk

from protocol import (
    AssistantMessageEvent,
    PermissionRequestBlock,
    PermissionRequestEvent,
    ResultEvent,
    ServerEvent,
    StatusEvent,
    TextBlock,
    TextDeltaEvent,
    ThinkingBlock,
    ThinkingDeltaEvent,
    ToolUseBlock,
    ToolUseProgressEvent,
    ToolUseResultEvent,
    ToolUseStartEvent,
    UserInputBlock,
    UserInputRequestEvent,
)

logger = logging.getLogger(__name__)

FORCED_COMPLETION_RESULT = "Completed"


@dataclasses.dataclass
class ChatMessageItem:
    id: str
    role: str
    content: str = ""
    pending: bool = False
    content_blocks: list[Any] = dataclasses.field(default_factory=list)
    pending_thinking: Optional[str] = None
    cost_usd: Optional[float] = None
    duration_ms: Optional[int] = None


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _block_type(block: Any) -> Optional[str]:
    if isinstance(block, sdk.TextBlock):
        return "text"
    if isinstance(block, sdk.ThinkingBlock):
        return "thinking"
    if isinstance(block, sdk.ToolUseBlock):
        return "tool_use"
    if isinstance(block, sdk.ToolResultBlock):
        return "tool_result"
    if isinstance(block, dict):
        return block.get("type")
    return None


def _classify(message: Any) -> tuple[Optional[str], Any]:
    """Reduce an SDK message (typed or raw dict) to (kind, payload)."""
    if isinstance(message, sdk.StreamEvent):
        return "stream_event", message.event
    if isinstance(message, sdk.AssistantMessage):
        return "assistant", message.content
    if isinstance(message, sdk.UserMessage):
        return "user", message.content
    if isinstance(message, sdk.ResultMessage):
        return "result", {
            "subtype": message.subtype,
            "errors": message.errors,
            "result": message.result,
            "total_cost_usd": message.total_cost_usd,
            "duration_ms": message.duration_ms,
        }
    if isinstance(message, sdk.SystemMessage):
        return message.subtype, message.data
    if isinstance(message, dict):
        kind = message.get("type")
        if kind == "stream_event":
            return kind, message.get("event") or {}
        if kind in ("assistant", "user"):
            inner = message.get("message") or {}
            return kind, inner.get("content")
        if kind == "system":
            return message.get("subtype"), message
        return kind, message
    return None, message


def _tool_result_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(item.get("text") or "")
            else:
                parts.append(json.dumps(item, default=str))
        return "\n".join(parts)
    return str(content)


def _format_elapsed(elapsed: Any) -> str:
    if isinstance(elapsed, (int, float)):
        return f"{elapsed:g}s"
    return f"{elapsed}s"


def _result_error(payload: dict) -> Optional[str]:
    errors = payload.get("errors")
    if isinstance(errors, list) and errors:
        return ", ".join(str(error) for error in errors)
    return payload.get("result") or payload.get("subtype") or None


class EventTranslator:
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        self.messages: list[ChatMessageItem] = []

        self._thinking = ""
        self._block_types: dict[int, str] = {}
        self._block_starts: dict[int, dict] = {}
        self._input_json: dict[int, str] = {}

        # Every tool block seen this session, and the ids still running in open order.
        self._tools: dict[str, ToolUseBlock] = {}
        self._pending_tools: dict[str, None] = {}
        self._requests: dict[str, Any] = {}

        self._handlers = {
            "stream_event": self._on_stream_event,
            "assistant": self._on_assistant,
            "user": self._on_user,
            "tool_progress": self._on_tool_progress,
            "tool_use_summary": self._on_tool_use_summary,
            "result": self._on_result,
        }

    @property
    def thinking(self) -> str:
        return self._thinking

    @property
    def pending_tool_ids(self) -> list[str]:
        return list(self._pending_tools)

    def tool_block(self, tool_use_id: str) -> Optional[ToolUseBlock]:
        return self._tools.get(tool_use_id)

    def add_user_message(self, text: str) -> ChatMessageItem:
        item = ChatMessageItem(id=str(uuid.uuid4()), role="user", content=text)
        self.messages.append(item)
        return item

    def feed(self, message: Any) -> list[ServerEvent]:
        kind, payload = _classify(message)
        handler = self._handlers.get(kind)
        if handler is None:
            return []
        return handler(payload)

    # In-memory message list

    def _pending_assistant(self) -> ChatMessageItem:
        if self.messages:
            last = self.messages[-1]
            if last.pending and last.role == "assistant":
                return last
        item = ChatMessageItem(id=str(uuid.uuid4()), role="assistant", pending=True)
        self.messages.append(item)
        return item

    def _last_assistant(self) -> Optional[ChatMessageItem]:
        for item in reversed(self.messages):
            if item.role == "assistant":
                return item
        return None

    # Tool bookkeeping

    def _register_tool(self, tool_use_id: str, name: str, tool_input: Any) -> ToolUseBlock:
        block = ToolUseBlock(id=tool_use_id, name=name, input=tool_input)
        self._tools[tool_use_id] = block
        self._pending_tools[tool_use_id] = None
        self._pending_assistant().content_blocks.append(block)
        return block

    def _start_tool(self, tool_use_id: str, name: str, tool_input: Any) -> list[ServerEvent]:
        block = self._tools.get(tool_use_id)
        if block is None:
            self._register_tool(tool_use_id, name, tool_input)
        elif block.status != "running":
            # Input arriving after the tool finished; re-announcing would regress the card.
            block.input = tool_input
            return []
        else:
            block.name = name
            block.input = tool_input
        return [
            ToolUseStartEvent(
                conversation_id=self.conversation_id,
                tool_use_id=tool_use_id,
                tool_name=name,
                input=tool_input,
            )
        ]

    def _complete_tool(self, tool_use_id: str, result: str, is_error: bool) -> list[ServerEvent]:
        if tool_use_id not in self._pending_tools:
            logger.debug("Ignoring result for tool %s: not running", tool_use_id)
            return []
        del self._pending_tools[tool_use_id]
        block = self._tools[tool_use_id]
        block.status = "error" if is_error else "completed"
        block.result = result
        return [
            ToolUseResultEvent(
                conversation_id=self.conversation_id,
                tool_use_id=tool_use_id,
                result=result,
                is_error=is_error,
            )
        ]

    # Handlers

    def _on_stream_event(self, event: dict) -> list[ServerEvent]:
        event_type = event.get("type")
        index = event.get("index")

        if event_type == "content_block_start":
            block = event.get("content_block") or {}
            block_type = block.get("type")
            if block_type == "thinking":
                self._block_types[index] = "thinking"
                self._thinking = ""
            elif block_type == "tool_use":
                self._block_types[index] = "tool_use"
                self._block_starts[index] = block
                self._input_json[index] = ""
            elif block_type == "text":
                self._block_types[index] = "text"
            return []

        if event_type == "content_block_delta":
            delta = event.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                text = delta.get("text") or ""
                self._pending_assistant().content += text
                return [TextDeltaEvent(conversation_id=self.conversation_id, text=text)]
            if delta_type == "thinking_delta":
                thinking = delta.get("thinking") or ""
                self._thinking += thinking
                self._pending_assistant().pending_thinking = self._thinking
                return [ThinkingDeltaEvent(conversation_id=self.conversation_id, text=thinking)]
            if delta_type == "input_json_delta":
                self._input_json[index] = self._input_json.get(index, "") + (delta.get("partial_json") or "")
            return []

        if event_type == "content_block_stop":
            events: list[ServerEvent] = []
            if self._block_types.get(index) == "tool_use":
                events = self._close_tool_block(index)
            self._block_types.pop(index, None)
            return events

        return []

    def _close_tool_block(self, index: int) -> list[ServerEvent]:
        block = self._block_starts.pop(index, None) or {}
        raw_json = self._input_json.pop(index, "") or "{}"
        try:
            tool_input = json.loads(raw_json)
        except ValueError:
            logger.warning("Unparseable input for tool block %s; keeping raw text", index)
            tool_input = {"_raw": raw_json}
        tool_use_id = block.get("id") or f"tool-{index}"
        tool_name = block.get("name") or "unknown"
        return self._start_tool(tool_use_id, tool_name, tool_input)

    def _on_assistant(self, content: Any) -> list[ServerEvent]:
        text = ""
        blocks: list[Any] = []

        if isinstance(content, str):
            text = content
            blocks.append(TextBlock(text=content))
        else:
            for block in content or []:
                block_type = _block_type(block)
                if block_type == "text":
                    block_text = _field(block, "text") or ""
                    text += block_text
                    blocks.append(TextBlock(text=block_text))
                elif block_type == "thinking":
                    blocks.append(ThinkingBlock(thinking=_field(block, "thinking") or ""))
                elif block_type == "tool_use":
                    tool_use_id = _field(block, "id")
                    tracked = self._tools.get(tool_use_id)
                    if tracked is None:
                        tracked = self._register_tool(tool_use_id, _field(block, "name") or "unknown", _field(block, "input"))
                    elif tracked.input is None:
                        tracked.input = _field(block, "input")
                    blocks.append(tracked)

        # Requests raised while this turn streamed stay attached to it.
        pending = self._pending_assistant()
        requests = [block for block in pending.content_blocks if block.type in ("permission_request", "user_input")]
        pending.content = text
        pending.content_blocks = blocks + requests
        pending.pending = False
        pending.pending_thinking = None
        self._thinking = ""

        return [
            AssistantMessageEvent(
                conversation_id=self.conversation_id,
                content=text,
                content_blocks=[block.model_copy() for block in blocks] or None,
            )
        ]

    def _on_user(self, content: Any) -> list[ServerEvent]:
        if not isinstance(content, list):
            return []
        events: list[ServerEvent] = []
        for block in content:
            if _block_type(block) != "tool_result":
                continue
            events.extend(
                self._complete_tool(
                    _field(block, "tool_use_id"),
                    _tool_result_text(_field(block, "content")),
                    bool(_field(block, "is_error")),
                )
            )
        return events

    def _on_tool_progress(self, payload: dict) -> list[ServerEvent]:
        tool_use_id = payload.get("tool_use_id")
        tool_name = payload.get("tool_name") or "unknown"
        events: list[ServerEvent] = []

        if tool_use_id and tool_use_id not in self._tools:
            events.extend(self._start_tool(tool_use_id, tool_name, None))

        elapsed = payload.get("elapsed_time_seconds")
        if tool_use_id in self._pending_tools and elapsed is not None:
            progress = _format_elapsed(elapsed)
            self._tools[tool_use_id].progress = progress
            events.append(
                ToolUseProgressEvent(
                    conversation_id=self.conversation_id,
                    tool_use_id=tool_use_id,
                    progress=progress,
                )
            )

        events.append(StatusEvent(conversation_id=self.conversation_id, status=f"Using {tool_name}..."))
        return events

    def _on_tool_use_summary(self, payload: dict) -> list[ServerEvent]:
        summary = payload.get("summary") or ""
        events: list[ServerEvent] = [StatusEvent(conversation_id=self.conversation_id, status=summary)]

        tool_use_ids = payload.get("preceding_tool_use_ids")
        if isinstance(tool_use_ids, list):
            for tool_use_id in tool_use_ids:
                events.extend(self._complete_tool(tool_use_id, summary, False))
        else:
            # Approximation: without explicit ids, attribute to the newest running tool.
            latest = next(reversed(self._pending_tools), None)
            if latest is not None:
                events.extend(self._complete_tool(latest, summary, False))
        return events

    def _on_result(self, payload: dict) -> list[ServerEvent]:
        events: list[ServerEvent] = []
        for tool_use_id in list(self._pending_tools):
            events.extend(self._complete_tool(tool_use_id, FORCED_COMPLETION_RESULT, False))

        success = payload.get("subtype") == "success"
        cost_usd = payload.get("total_cost_usd")
        duration_ms = payload.get("duration_ms")

        last = self._last_assistant()
        if last is not None:
            last.pending = False
            last.pending_thinking = None
            last.cost_usd = cost_usd
            last.duration_ms = duration_ms

        events.append(
            ResultEvent(
                conversation_id=self.conversation_id,
                success=success,
                error=None if success else _result_error(payload),
                cost_usd=cost_usd,
                duration_ms=duration_ms,
            )
        )
        return events

    # Permission and user-input requests

    def permission_requested(self, permission_id: str, tool_name: str, tool_input: dict) -> PermissionRequestEvent:
        block = PermissionRequestBlock(id=permission_id, tool_name=tool_name, input=tool_input)
        self._requests[permission_id] = block
        self._pending_assistant().content_blocks.append(block)
        return PermissionRequestEvent(
            conversation_id=self.conversation_id,
            permission_id=permission_id,
            tool_name=tool_name,
            input=tool_input,
        )

    def permission_resolved(self, permission_id: str, approved: bool) -> None:
        block = self._requests.pop(permission_id, None)
        if block is not None:
            block.status = "approved" if approved else "denied"

    def user_input_requested(self, request_id: str, questions: list[dict[str, Any]]) -> UserInputRequestEvent:
        block = UserInputBlock(id=request_id, questions=questions)
        self._requests[request_id] = block
        self._pending_assistant().content_blocks.append(block)
        return UserInputRequestEvent(
            conversation_id=self.conversation_id,
            request_id=request_id,
            questions=questions,
        )

    def user_input_resolved(self, request_id: str, answers: Optional[dict[str, str]]) -> None:
        block = self._requests.pop(request_id, None)
        if block is not None and answers is not None:
            block.status = "answered"
            block.answers = answers
