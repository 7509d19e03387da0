"""
Wire vocabulary shared by the WebSocket transport and the query lifecycle manager.

Everything that crosses the socket is a pydantic model:
- content blocks (persisted as JSON in `messages.content_blocks` and embedded in events)
- client commands (browser -> server), parsed with `parse_client_command`
- server events (server -> browser), serialized with `ServerEvent.to_wire`

Field names are snake_case in Python and camelCase on the wire.
"""
import json
from typing import Annotated, Any, Awaitable, Callable, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Content blocks

class TextBlock(_WireModel):
    type: Literal["text"] = "text"
    text: str


class ThinkingBlock(_WireModel):
    type: Literal["thinking"] = "thinking"
    thinking: str


class ToolUseBlock(_WireModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Any = None
    status: Literal["running", "completed", "error"] = "running"
    result: Optional[str] = None
    progress: Optional[str] = None


class PermissionRequestBlock(_WireModel):
    type: Literal["permission_request"] = "permission_request"
    id: str
    tool_name: str
    input: Any = None
    status: Literal["pending", "approved", "denied"] = "pending"


class UserInputBlock(_WireModel):
    type: Literal["user_input"] = "user_input"
    id: str
    questions: list[dict[str, Any]] = Field(default_factory=list)
    status: Literal["pending", "answered"] = "pending"
    answers: Optional[dict[str, str]] = None


ContentBlock = Annotated[
    Union[TextBlock, ThinkingBlock, ToolUseBlock, PermissionRequestBlock, UserInputBlock],
    Field(discriminator="type"),
]
_CONTENT_BLOCKS_ADAPTER = TypeAdapter(list[ContentBlock])


def dump_content_blocks(blocks: list[Any]) -> Optional[str]:
    """Serialize blocks for the `content_blocks` column; None when there are none."""
    if not blocks:
        return None
    return _CONTENT_BLOCKS_ADAPTER.dump_json(blocks, by_alias=True, exclude_none=True).decode("utf-8")


def load_content_blocks(raw: Optional[str]) -> Optional[list[dict[str, Any]]]:
    if not raw:
        return None
    try:
        blocks = _CONTENT_BLOCKS_ADAPTER.validate_json(raw)
    except ValidationError:
        return None
    return [block.model_dump(by_alias=True, exclude_none=True) for block in blocks]


# Client -> server commands

class ChatCommand(_WireModel):
    type: Literal["chat"]
    conversation_id: str = Field(min_length=1)
    message: str = Field(min_length=1)


class InterruptCommand(_WireModel):
    type: Literal["interrupt"]
    conversation_id: str = Field(min_length=1)


class ArchiveCommand(_WireModel):
    type: Literal["archive"]
    conversation_id: str = Field(min_length=1)


class PermissionResponseCommand(_WireModel):
    type: Literal["permission_response"]
    permission_id: str = Field(min_length=1)
    approved: bool
    conversation_id: Optional[str] = None


class UserInputResponseCommand(_WireModel):
    type: Literal["user_input_response"]
    request_id: str = Field(min_length=1)
    answers: dict[str, str]


ClientCommand = Annotated[
    Union[
        ChatCommand,
        InterruptCommand,
        ArchiveCommand,
        PermissionResponseCommand,
        UserInputResponseCommand,
    ],
    Field(discriminator="type"),
]
_COMMAND_ADAPTER = TypeAdapter(ClientCommand)
_COMMAND_TYPES = {"chat", "interrupt", "archive", "permission_response", "user_input_response"}


class CommandError(ValueError):
    """A client frame that cannot be turned into a command."""

    def __init__(self, message: str, *, conversation_id: str = ""):
        super().__init__(message)
        self.conversation_id = conversation_id


def parse_client_command(raw: Union[str, bytes]) -> ClientCommand:
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        raise CommandError("Invalid JSON")
    if not isinstance(payload, dict):
        raise CommandError("Invalid JSON")

    conversation_id = payload.get("conversationId")
    conversation_id = conversation_id if isinstance(conversation_id, str) else ""
    command_type = payload.get("type")
    if command_type not in _COMMAND_TYPES:
        raise CommandError(f"Unknown message type: {command_type}", conversation_id=conversation_id)

    try:
        return _COMMAND_ADAPTER.validate_python(payload)
    except ValidationError:
        if command_type == "chat":
            raise CommandError("Missing conversationId or message", conversation_id=conversation_id)
        raise CommandError(f"Invalid {command_type} message", conversation_id=conversation_id)


# Server -> client events

class ServerEvent(_WireModel):
    type: str
    conversation_id: str

    # Optional fields left off the wire when unset.
    omit_when_none: ClassVar[tuple[str, ...]] = ()

    def to_wire(self) -> dict[str, Any]:
        exclude = {name for name in self.omit_when_none if getattr(self, name) is None}
        return self.model_dump(mode="json", by_alias=True, exclude=exclude)


class TextDeltaEvent(ServerEvent):
    type: Literal["text_delta"] = "text_delta"
    text: str


class ThinkingDeltaEvent(ServerEvent):
    type: Literal["thinking_delta"] = "thinking_delta"
    text: str


class ToolUseStartEvent(ServerEvent):
    type: Literal["tool_use_start"] = "tool_use_start"
    tool_use_id: str
    tool_name: str
    input: Any = None


class ToolUseResultEvent(ServerEvent):
    type: Literal["tool_use_result"] = "tool_use_result"
    tool_use_id: str
    result: str
    is_error: bool = False


class ToolUseProgressEvent(ServerEvent):
    type: Literal["tool_use_progress"] = "tool_use_progress"
    tool_use_id: str
    progress: str


class AssistantMessageEvent(ServerEvent):
    type: Literal["assistant_message"] = "assistant_message"
    content: str
    content_blocks: Optional[list[ContentBlock]] = None

    omit_when_none: ClassVar[tuple[str, ...]] = ("content_blocks",)

    def to_wire(self) -> dict[str, Any]:
        wire = super().to_wire()
        if self.content_blocks is not None:
            wire["contentBlocks"] = [
                block.model_dump(mode="json", by_alias=True, exclude_none=True)
                for block in self.content_blocks
            ]
        return wire


class StatusEvent(ServerEvent):
    type: Literal["status"] = "status"
    status: str


class ResultEvent(ServerEvent):
    type: Literal["result"] = "result"
    success: bool
    error: Optional[str] = None
    cost_usd: Optional[float] = None
    duration_ms: Optional[int] = None

    omit_when_none: ClassVar[tuple[str, ...]] = ("error", "cost_usd", "duration_ms")


class ErrorEvent(ServerEvent):
    type: Literal["error"] = "error"
    message: str


class ArchivedEvent(ServerEvent):
    type: Literal["archived"] = "archived"


class SummaryReadyEvent(ServerEvent):
    type: Literal["summary_ready"] = "summary_ready"
    summary: str


class PermissionRequestEvent(ServerEvent):
    type: Literal["permission_request"] = "permission_request"
    permission_id: str
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)


class UserInputRequestEvent(ServerEvent):
    type: Literal["user_input_request"] = "user_input_request"
    request_id: str
    questions: list[dict[str, Any]] = Field(default_factory=list)


class ActiveQueriesEvent(_WireModel):
    """Sent once per connection; the only event not scoped to one conversation."""

    type: Literal["active_queries"] = "active_queries"
    conversation_ids: list[str]

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


Send = Callable[[Union[ServerEvent, ActiveQueriesEvent]], Awaitable[None]]
