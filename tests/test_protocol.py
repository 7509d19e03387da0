import json

import pytest

from protocol import (
    ActiveQueriesEvent,
    ArchivedEvent,
    ChatCommand,
    CommandError,
    InterruptCommand,
    PermissionResponseCommand,
    ResultEvent,
    TextBlock,
    ToolUseBlock,
    UserInputResponseCommand,
    dump_content_blocks,
    load_content_blocks,
    parse_client_command,
)


def test_parse_chat_command():
    command = parse_client_command(json.dumps({"type": "chat", "conversationId": "c1", "message": "hi"}))
    assert isinstance(command, ChatCommand)
    assert command.conversation_id == "c1"
    assert command.message == "hi"


def test_parse_permission_and_user_input_responses():
    permission = parse_client_command('{"type": "permission_response", "permissionId": "p1", "approved": false}')
    assert isinstance(permission, PermissionResponseCommand)
    assert permission.approved is False

    answer = parse_client_command(
        '{"type": "user_input_response", "requestId": "r1", "answers": {"Which color?": "Blue"}}'
    )
    assert isinstance(answer, UserInputResponseCommand)
    assert answer.answers == {"Which color?": "Blue"}

    assert isinstance(parse_client_command('{"type": "interrupt", "conversationId": "c1"}'), InterruptCommand)


@pytest.mark.parametrize("raw", ["{not json", "[1, 2]", "null"])
def test_invalid_frames_are_reported_as_invalid_json(raw):
    with pytest.raises(CommandError, match="Invalid JSON"):
        parse_client_command(raw)


def test_unknown_type_keeps_conversation_id():
    with pytest.raises(CommandError) as exc_info:
        parse_client_command('{"type": "explode", "conversationId": "c9"}')
    assert str(exc_info.value) == "Unknown message type: explode"
    assert exc_info.value.conversation_id == "c9"


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "chat", "conversationId": "c1"},
        {"type": "chat", "conversationId": "c1", "message": ""},
        {"type": "chat", "conversationId": "", "message": "hello"},
    ],
)
def test_chat_requires_conversation_and_message(payload):
    with pytest.raises(CommandError, match="Missing conversationId or message"):
        parse_client_command(json.dumps(payload))


def test_other_incomplete_commands_name_their_type():
    with pytest.raises(CommandError, match="Invalid permission_response message"):
        parse_client_command('{"type": "permission_response", "approved": true}')


def test_result_event_omits_unset_optionals():
    assert ResultEvent(conversation_id="c1", success=True).to_wire() == {
        "type": "result",
        "conversationId": "c1",
        "success": True,
    }


def test_events_use_camel_case_keys():
    assert ArchivedEvent(conversation_id="c1").to_wire() == {"type": "archived", "conversationId": "c1"}
    assert ActiveQueriesEvent(conversation_ids=["a", "b"]).to_wire() == {
        "type": "active_queries",
        "conversationIds": ["a", "b"],
    }


def test_content_blocks_serialize_for_storage():
    raw = dump_content_blocks(
        [TextBlock(text="hi"), ToolUseBlock(id="t1", name="Bash", input={"command": "ls"}, status="completed", result="a.py")]
    )
    assert json.loads(raw) == [
        {"type": "text", "text": "hi"},
        {"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "ls"}, "status": "completed", "result": "a.py"},
    ]
    assert load_content_blocks(raw) == json.loads(raw)


def test_empty_or_corrupt_blocks_load_as_none():
    assert dump_content_blocks([]) is None
    assert dump_content_blocks(None) is None
    assert load_content_blocks(None) is None
    assert load_content_blocks('[{"type": "mystery"}]') is None
