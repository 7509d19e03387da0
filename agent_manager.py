"""
This module implements the AgentManager class, which runs agent queries on behalf of conversations.
It provides methods for:
- Starting a streaming query and relaying its events to the client
- Interrupting a running query
- Resolving tool-permission and user-input requests
- Archiving a conversation and generating its summary
"""
import asyncio
import json
import logging
import os
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as redis
from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny, SystemMessage

from agent_session import SYSTEM_PROMPT_APPENDIX, SessionRequest, open_session, run_single_turn
from conversation_store import DEFAULT_TITLE, ConversationStore, Message
from event_translator import EventTranslator
from protocol import (
    ArchivedEvent,
    AssistantMessageEvent,
    ErrorEvent,
    Send,
    StatusEvent,
    SummaryReadyEvent,
    dump_content_blocks,
)
from registries import (
    KIND_PERMISSION,
    KIND_USER_INPUT,
    ActiveQuery,
    PendingRequest,
    PermissionBroker,
    SessionRegistry,
)

logger = logging.getLogger(__name__)
_PERMISSION_LOGGING_ENABLED = os.environ.get("PERMISSION_LOGGING", "1") == "1"
_permission_logger = logging.getLogger("nexia.permissions")
_PERMISSION_LOG_MAX = int(os.environ.get("PERMISSION_LOG_MAX", "200"))
_PERMISSION_LOG_GLOBAL_KEY = "permission_log:global"
_PERMISSION_LOG_CONVERSATION_KEY_PREFIX = "permission_log:conversation:"
_INTERRUPT_TTL_S = 86400 * 7

USER_INPUT_TOOL = "AskUserQuestion"
QUERY_ENDED_MESSAGE = "Query ended"
INTERRUPT_NOTE = "Note: The previous response was interrupted by the user."
NO_MESSAGES_SUMMARY = "No messages in this conversation."
TITLE_MAX_CHARS = 50

# Substrings of a stream error that mean the resumed session no longer exists.
_SESSION_GONE_MARKERS = ("exited with code", "exit code", "session", "ENOENT")

SUMMARY_PROMPT_TEMPLATE = """You are summarizing a conversation between a user and an AI assistant. Here is the full transcript with numbered messages:

{transcript}

Generate a structured summary in markdown with these sections:

## Overview
2-3 sentences describing what this conversation was about and the outcome.

## Actions Taken
Bullet list of concrete actions performed (files created/edited, commands run, configs changed, etc.). Reference message numbers like (see #5) where relevant.

## Key Decisions
Bullet list of important decisions made and their reasoning. Reference message numbers.

## Topics Covered
Short bullet list of main topics discussed.

Be concise but thorough. Focus on what would be useful for someone reviewing this conversation later."""

SessionFactory = Callable[[SessionRequest], Any]
Summarizer = Callable[[str], Awaitable[str]]


def _configure_permission_logger() -> logging.Logger:
    if not _PERMISSION_LOGGING_ENABLED:
        return _permission_logger
    if _permission_logger.handlers:
        return _permission_logger
    handler = logging.StreamHandler()
    formatter = logging.Formatter(
        "PERMISSION %(asctime)s %(levelname)s conversation=%(conversation)s tool=%(tool)s decision=%(decision)s reason=%(reason)s input=%(input)s"
    )
    handler.setFormatter(formatter)
    _permission_logger.addHandler(handler)
    _permission_logger.setLevel(logging.INFO)
    _permission_logger.propagate = False
    return _permission_logger


def _summarize_tool_input(tool: str, input_data: dict) -> str:
    if not isinstance(input_data, dict):
        return ""
    if tool == "Bash":
        return str(input_data.get("command") or "")
    if tool == USER_INPUT_TOOL:
        questions = input_data.get("questions")
        return f"{len(questions)} question(s)" if isinstance(questions, list) else ""
    for key in ("file_path", "path", "url", "pattern", "command"):
        if key in input_data:
            return str(input_data.get(key) or "")
    return ""


def _redact_sensitive_text(text: str) -> str:
    if not text:
        return text
    redacted = re.sub(r"(?i)\b(bearer)\s+([a-z0-9._-]+)", r"\1 <redacted>", text)
    redacted = re.sub(
        r"(?i)\b(api[_-]?key|token|secret|password)\s*[:=]\s*([^\s]+)",
        r"\1=<redacted>",
        redacted,
    )
    redacted = re.sub(
        r"(?i)--(api[_-]?key|token|secret|password)\s+([^\s]+)",
        r"--\1 <redacted>",
        redacted,
    )
    return redacted


def _sanitize_permission_input(text: str, *, max_len: int = 400) -> str:
    if not text:
        return ""
    cleaned = _redact_sensitive_text(text)
    if len(cleaned) > max_len:
        return cleaned[: max_len - 3] + "..."
    return cleaned


def infer_title(message: str) -> str:
    if len(message) > TITLE_MAX_CHARS:
        return message[:TITLE_MAX_CHARS] + "..."
    return message


def build_transcript(messages: list[Message]) -> str:
    return "\n\n".join(
        f"[#{number}] {message.role.upper()}: {message.content}"
        for number, message in enumerate(messages, start=1)
    )


def _is_session_gone(error_message: str) -> bool:
    return any(marker in error_message for marker in _SESSION_GONE_MARKERS)


def _extract_session_id(msg: Any) -> Optional[str]:
    if isinstance(msg, dict):
        return msg.get("session_id") or None
    if isinstance(msg, SystemMessage):
        return (msg.data or {}).get("session_id") or None
    return getattr(msg, "session_id", None) or None


def _user_input_questions(input_data: dict) -> list[dict[str, Any]]:
    questions = (input_data or {}).get("questions")
    if not isinstance(questions, list):
        return []
    return [question for question in questions if isinstance(question, dict)]


class AgentManager:
    def __init__(
        self,
        store: ConversationStore,
        *,
        redis_url: Optional[str] = None,
        session_factory: SessionFactory = open_session,
        summarizer: Summarizer = run_single_turn,
        sessions: Optional[SessionRegistry] = None,
        permissions: Optional[PermissionBroker] = None,
    ):
        self.store = store
        self.redis = redis.from_url(redis_url) if redis_url else None
        self.sessions = sessions if sessions is not None else SessionRegistry()
        self.permissions = permissions if permissions is not None else PermissionBroker()
        self.session_factory = session_factory
        self.summarizer = summarizer
        self._background_tasks: set[asyncio.Task] = set()
        self._permission_logger = _configure_permission_logger()

    # Permission audit log

    async def _record_permission_decision(
        self,
        *,
        conversation_id: str,
        tool: str,
        decision: str,
        reason: str,
        input_data: Any,
    ) -> None:
        input_summary = _sanitize_permission_input(_summarize_tool_input(tool, input_data or {}))
        self._permission_logger.info(
            "",
            extra={
                "conversation": conversation_id,
                "tool": tool,
                "decision": decision,
                "reason": reason,
                "input": input_summary,
            },
        )
        if self.redis is None:
            return
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "conversation_id": conversation_id,
            "tool": tool,
            "decision": decision,
            "reason": reason,
            "input": input_summary,
        }
        data = json.dumps(record)
        conversation_key = f"{_PERMISSION_LOG_CONVERSATION_KEY_PREFIX}{conversation_id}"
        try:
            pipe = self.redis.pipeline()
            for key in (_PERMISSION_LOG_GLOBAL_KEY, conversation_key):
                pipe.lpush(key, data)
                pipe.ltrim(key, 0, max(_PERMISSION_LOG_MAX - 1, 0))
            await pipe.execute()
        except Exception:
            logger.exception("Failed to store permission decision log")

    async def get_permission_log(
        self,
        *,
        conversation_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        if self.redis is None:
            return []
        limit = max(1, min(int(limit or 100), 500))
        key = (
            f"{_PERMISSION_LOG_CONVERSATION_KEY_PREFIX}{conversation_id}"
            if conversation_id
            else _PERMISSION_LOG_GLOBAL_KEY
        )
        try:
            raw_items = await self.redis.lrange(key, 0, limit - 1)
        except Exception:
            logger.exception("Failed to read permission log")
            return []
        entries: list[dict[str, Any]] = []
        for raw in raw_items:
            try:
                if isinstance(raw, (bytes, bytearray)):
                    raw = raw.decode("utf-8")
                entries.append(json.loads(raw))
            except ValueError:
                continue
        return entries

    async def _log_swept(self, denied: list[PendingRequest], reason: str) -> None:
        for entry in denied:
            await self._record_permission_decision(
                conversation_id=entry.conversation_id,
                tool=entry.tool_name,
                decision="deny",
                reason=reason,
                input_data=entry.input,
            )

    # Interrupt notes

    async def _mark_interrupted(self, conversation_id: str) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.set(f"interrupt:{conversation_id}", "1", ex=_INTERRUPT_TTL_S)
        except Exception:
            logger.exception("Failed to record interrupt for conversation %s", conversation_id)

    async def _consume_interrupt_note(self, conversation_id: str) -> Optional[str]:
        if self.redis is None:
            return None
        key = f"interrupt:{conversation_id}"
        try:
            data = await self.redis.get(key)
            if not data:
                return None
            await self.redis.delete(key)
        except Exception:
            logger.exception("Failed to read interrupt note for conversation %s", conversation_id)
            return None
        return INTERRUPT_NOTE

    async def _build_system_prompt_append(self, conversation_id: str) -> str:
        note = await self._consume_interrupt_note(conversation_id)
        if note:
            return f"{SYSTEM_PROMPT_APPENDIX}\n\n{note}"
        return SYSTEM_PROMPT_APPENDIX

    # Queries

    def _build_permission_handler(self, *, conversation_id: str, translator: EventTranslator, send: Send):
        async def can_use_tool(
            tool: str,
            input_data: dict,
            *_args,
            **_kwargs,
        ) -> PermissionResultAllow | PermissionResultDeny:
            request_id = str(uuid.uuid4())
            if tool == USER_INPUT_TOOL:
                future = self.permissions.open(
                    request_id,
                    conversation_id=conversation_id,
                    tool_name=tool,
                    input_data=input_data,
                    kind=KIND_USER_INPUT,
                )
                await send(translator.user_input_requested(request_id, _user_input_questions(input_data)))
                result = await future
                answers = result.updated_input.get("answers") if isinstance(result, PermissionResultAllow) else None
                translator.user_input_resolved(request_id, answers)
                return result

            future = self.permissions.open(
                request_id,
                conversation_id=conversation_id,
                tool_name=tool,
                input_data=input_data,
                kind=KIND_PERMISSION,
            )
            await send(translator.permission_requested(request_id, tool, input_data))
            result = await future
            translator.permission_resolved(request_id, isinstance(result, PermissionResultAllow))
            return result

        return can_use_tool

    async def start_query(self, conversation_id: str, message: str, send: Send) -> None:
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            await send(ErrorEvent(conversation_id=conversation_id, message="Conversation not found"))
            return

        handle = self.sessions.reserve(conversation_id)
        if handle is None:
            await send(
                ErrorEvent(
                    conversation_id=conversation_id,
                    message="A query is already active for this conversation",
                )
            )
            return

        try:
            await self._run_query(handle, conversation, message, send)
        finally:
            self.sessions.release(handle)
            denied = self.permissions.deny_for_conversation(conversation_id, QUERY_ENDED_MESSAGE)
            await self._log_swept(denied, "query_ended")
            try:
                await self.store.touch(conversation_id)
            except Exception:
                logger.exception("Failed to touch conversation %s", conversation_id)

    async def _run_query(self, handle: ActiveQuery, conversation, message: str, send: Send) -> None:
        conversation_id = conversation.id
        translator = EventTranslator(conversation_id)

        # Stored before the session opens so the input survives an immediate failure.
        try:
            await self.store.insert_message(str(uuid.uuid4()), conversation_id, "user", message)
        except Exception:
            logger.exception("Failed to store user message for conversation %s", conversation_id)
            await send(ErrorEvent(conversation_id=conversation_id, message="Failed to save message"))
            return
        translator.add_user_message(message)

        needs_title = conversation.session_id is None and conversation.title == DEFAULT_TITLE
        session_captured = False
        request = SessionRequest(
            prompt=message,
            cwd=conversation.cwd,
            can_use_tool=self._build_permission_handler(
                conversation_id=conversation_id,
                translator=translator,
                send=send,
            ),
            system_prompt_append=await self._build_system_prompt_append(conversation_id),
            resume=conversation.session_id,
        )

        try:
            async with self.session_factory(request) as session:
                await self.sessions.attach(handle, session)
                async for msg in session.messages():
                    if not session_captured:
                        session_id = _extract_session_id(msg)
                        if session_id:
                            await self.store.update_session_id(conversation_id, session_id)
                            session_captured = True

                    for event in translator.feed(msg):
                        if isinstance(event, AssistantMessageEvent):
                            await self.store.insert_message(
                                str(uuid.uuid4()),
                                conversation_id,
                                "assistant",
                                event.content,
                                dump_content_blocks(event.content_blocks),
                            )
                        await send(event)
                        if isinstance(event, AssistantMessageEvent) and needs_title:
                            needs_title = False
                            await self.store.update_title(conversation_id, infer_title(message))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._handle_query_failure(conversation, e, send)

    async def _handle_query_failure(self, conversation, exc: Exception, send: Send) -> None:
        conversation_id = conversation.id
        error_message = str(exc) or "Query failed"
        if conversation.session_id and _is_session_gone(error_message):
            logger.warning(
                "Resumed session %s for conversation %s is gone; archiving: %s",
                conversation.session_id,
                conversation_id,
                error_message,
            )
            if await self.store.mark_archived(conversation_id):
                await send(ArchivedEvent(conversation_id=conversation_id))
                self._spawn_background(self._summarize_in_background(conversation_id, send))
                return
        else:
            logger.warning("Query failed for conversation %s: %s", conversation_id, error_message)
        await send(ErrorEvent(conversation_id=conversation_id, message=error_message))

    async def interrupt_query(self, conversation_id: str) -> bool:
        interrupted = await self.sessions.interrupt(conversation_id)
        if interrupted:
            await self._mark_interrupted(conversation_id)
        return interrupted

    async def resolve_permission(self, permission_id: str, approved: bool) -> bool:
        entry = self.permissions.resolve_permission(permission_id, approved)
        if entry is None:
            return False
        await self._record_permission_decision(
            conversation_id=entry.conversation_id,
            tool=entry.tool_name,
            decision="allow" if approved else "deny",
            reason="user",
            input_data=entry.input,
        )
        return True

    async def resolve_user_input(self, request_id: str, answers: dict[str, str]) -> bool:
        entry = self.permissions.resolve_user_input(request_id, answers)
        if entry is None:
            return False
        await self._record_permission_decision(
            conversation_id=entry.conversation_id,
            tool=entry.tool_name,
            decision="allow",
            reason="answered",
            input_data=entry.input,
        )
        return True

    def active_query_ids(self) -> list[str]:
        return self.sessions.active_ids()

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id in self.sessions

    # Archival and summaries

    async def archive_conversation(self, conversation_id: str, send: Send) -> None:
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            await send(ErrorEvent(conversation_id=conversation_id, message="Conversation not found"))
            return
        if conversation.is_archived or not await self.store.mark_archived(conversation_id):
            await send(ErrorEvent(conversation_id=conversation_id, message="Already archived"))
            return

        await send(ArchivedEvent(conversation_id=conversation_id))
        await self.generate_summary(conversation_id, send)

    async def generate_summary(self, conversation_id: str, send: Send) -> str:
        """Summarize the stored transcript. Never raises on summarizer failure."""
        messages = await self.store.list_messages(conversation_id)
        if not messages:
            await self.store.set_summary(conversation_id, NO_MESSAGES_SUMMARY)
            await send(SummaryReadyEvent(conversation_id=conversation_id, summary=NO_MESSAGES_SUMMARY))
            return NO_MESSAGES_SUMMARY

        await send(StatusEvent(conversation_id=conversation_id, status="Generating summary..."))
        prompt = SUMMARY_PROMPT_TEMPLATE.format(transcript=build_transcript(messages))
        try:
            summary = await self.summarizer(prompt)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Summary generation failed for conversation %s", conversation_id)
            summary = ""
        if not summary:
            summary = f"Summary generation failed. Conversation had {len(messages)} messages."

        await self.store.set_summary(conversation_id, summary)
        await send(SummaryReadyEvent(conversation_id=conversation_id, summary=summary))
        return summary

    async def _summarize_in_background(self, conversation_id: str, send: Send) -> None:
        try:
            await self.generate_summary(conversation_id, send)
        except Exception:
            logger.exception("Background summary failed for conversation %s", conversation_id)

    def _spawn_background(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def wait_for_background_tasks(self) -> None:
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def close(self):
        for conversation_id in self.sessions.active_ids():
            await self.sessions.interrupt(conversation_id)
        denied = self.permissions.deny_all(QUERY_ENDED_MESSAGE)
        await self._log_swept(denied, "shutdown")
        for task in list(self._background_tasks):
            task.cancel()
        await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
        if self.redis is not None:
            await self.redis.aclose()
