"""
Process-wide bookkeeping for running queries.

SessionRegistry holds at most one ActiveQuery per conversation. PermissionBroker
holds the tool-permission and user-input requests that are waiting on the browser.
Both are plain dicts mutated only from the event loop thread, and no method awaits
between reading and writing an entry.
"""
import asyncio
import dataclasses
import logging
from typing import Any, Optional

from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

logger = logging.getLogger(__name__)

USER_DENIED_MESSAGE = "User denied permission"

KIND_PERMISSION = "permission"
KIND_USER_INPUT = "user_input"


@dataclasses.dataclass(eq=False)
class ActiveQuery:
    conversation_id: str
    session: Any = None
    interrupt_requested: bool = False


class SessionRegistry:
    def __init__(self) -> None:
        self._active: dict[str, ActiveQuery] = {}

    def reserve(self, conversation_id: str) -> Optional[ActiveQuery]:
        """Claim the conversation's slot. None when a query already holds it."""
        if conversation_id in self._active:
            return None
        handle = ActiveQuery(conversation_id=conversation_id)
        self._active[conversation_id] = handle
        return handle

    async def attach(self, handle: ActiveQuery, session: Any) -> None:
        handle.session = session
        if handle.interrupt_requested:
            logger.info("Delivering deferred interrupt for conversation %s", handle.conversation_id)
            await session.interrupt()

    def release(self, handle: ActiveQuery) -> None:
        if self._active.get(handle.conversation_id) is handle:
            self._active.pop(handle.conversation_id, None)

    def get(self, conversation_id: str) -> Optional[ActiveQuery]:
        return self._active.get(conversation_id)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._active

    def __len__(self) -> int:
        return len(self._active)

    def active_ids(self) -> list[str]:
        return list(self._active)

    async def interrupt(self, conversation_id: str) -> bool:
        handle = self._active.get(conversation_id)
        if handle is None:
            return False
        if handle.session is None:
            # Session still opening; attach() delivers it.
            handle.interrupt_requested = True
            return True
        try:
            await handle.session.interrupt()
        except Exception:
            logger.exception("Failed to interrupt session for conversation %s", conversation_id)
            return False
        return True


@dataclasses.dataclass(eq=False)
class PendingRequest:
    request_id: str
    conversation_id: str
    tool_name: str
    input: dict[str, Any]
    kind: str
    future: "asyncio.Future[Any]"


class PermissionBroker:
    """Correlation table from request id to the suspended permission callback."""

    def __init__(self) -> None:
        self._pending: dict[str, PendingRequest] = {}

    def open(
        self,
        request_id: str,
        *,
        conversation_id: str,
        tool_name: str,
        input_data: dict[str, Any],
        kind: str = KIND_PERMISSION,
    ) -> "asyncio.Future[Any]":
        if request_id in self._pending:
            raise ValueError(f"Duplicate pending request id {request_id}")
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingRequest(
            request_id=request_id,
            conversation_id=conversation_id,
            tool_name=tool_name,
            input=input_data,
            kind=kind,
            future=future,
        )
        return future

    def _take(self, request_id: str, kind: str) -> Optional[PendingRequest]:
        entry = self._pending.get(request_id)
        if entry is None or entry.kind != kind:
            return None
        del self._pending[request_id]
        if entry.future.done():
            # The SDK gave up on the callback (cancelled); nothing left to resolve.
            return None
        return entry

    def resolve_permission(self, request_id: str, approved: bool) -> Optional[PendingRequest]:
        entry = self._take(request_id, KIND_PERMISSION)
        if entry is None:
            return None
        if approved:
            # updated_input is mandatory for the CLI; hand back the original object untouched.
            entry.future.set_result(PermissionResultAllow(updated_input=entry.input))
        else:
            entry.future.set_result(PermissionResultDeny(message=USER_DENIED_MESSAGE))
        return entry

    def resolve_user_input(self, request_id: str, answers: dict[str, str]) -> Optional[PendingRequest]:
        entry = self._take(request_id, KIND_USER_INPUT)
        if entry is None:
            return None
        entry.future.set_result(PermissionResultAllow(updated_input={**entry.input, "answers": answers}))
        return entry

    def deny_for_conversation(self, conversation_id: str, message: str) -> list[PendingRequest]:
        return self._deny_where(lambda entry: entry.conversation_id == conversation_id, message)

    def deny_all(self, message: str) -> list[PendingRequest]:
        return self._deny_where(lambda entry: True, message)

    def _deny_where(self, predicate, message: str) -> list[PendingRequest]:
        denied: list[PendingRequest] = []
        for request_id, entry in list(self._pending.items()):
            if not predicate(entry):
                continue
            del self._pending[request_id]
            if not entry.future.done():
                entry.future.set_result(PermissionResultDeny(message=message))
                denied.append(entry)
        return denied

    def pending_for(self, conversation_id: str) -> list[PendingRequest]:
        return [entry for entry in self._pending.values() if entry.conversation_id == conversation_id]

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)
