"""Tests for the Bedrock model adapter (boto3 client mocked)."""

import io
import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from agent.history import (
    ConversationHistory, assistant_message, cancelled_message, error_message, tool_message, user_message,
)
from bedrock_service import BedrockService, ModelError, describe_model_error, format_messages
from tools import ToolCall, ToolResult


def _service(response=None, error=None):
    client = MagicMock()
    if error is not None:
        client.invoke_model.side_effect = error
    else:
        client.invoke_model.return_value = {"body": io.BytesIO(json.dumps(response).encode())}
    return BedrockService(model_id="test-model", region="us-east-1", max_tokens=1024, client=client), client


def test_format_messages_pairs_tool_results():
    history = ConversationHistory([
        user_message("list files"),
        assistant_message("Looking.", [ToolCall("t1", "list_files", '{"path": "/"}')]),
        tool_message(ToolResult("t1", False, {"path": "/", "entries": []})),
        error_message("boom"),
        user_message("thanks"),
        cancelled_message(),
    ])
    messages = format_messages(history)

    assert [m["role"] for m in messages] == ["user", "assistant", "user"]
    assert messages[1]["content"][1] == {"type": "tool_use", "id": "t1", "name": "list_files", "input": {"path": "/"}}
    result_block, text_block = messages[2]["content"]
    assert result_block["type"] == "tool_result"
    assert result_block["tool_use_id"] == "t1"
    assert json.loads(result_block["content"]) == {"path": "/", "entries": []}
    assert text_block == {"type": "text", "text": "thanks"}


@pytest.mark.asyncio
async def test_complete_parses_response():
    service, client = _service({
        "content": [
            {"type": "thinking", "thinking": "hmm"},
            {"type": "text", "text": "Writing it."},
            {"type": "tool_use", "id": "tu_1", "name": "write_file", "input": {"path": "a.txt", "content": "hi"}},
        ],
        "stop_reason": "tool_use",
        "usage": {"input_tokens": 12, "output_tokens": 7},
    })
    history = ConversationHistory([user_message("make a.txt")])
    completion = await service.complete(history, [{"name": "write_file"}], system_prompt="be brief")

    assert completion.text == "Writing it."
    assert completion.reasoning == "hmm"
    assert completion.tool_calls == [ToolCall("tu_1", "write_file", {"path": "a.txt", "content": "hi"})]
    assert completion.stop_reason == "tool_use"
    assert completion.input_tokens == 12

    body = json.loads(client.invoke_model.call_args.kwargs["body"])
    assert body["system"] == "be brief"
    assert body["tools"] == [{"name": "write_file"}]
    assert body["anthropic_version"] == "bedrock-2023-05-31"


@pytest.mark.asyncio
async def test_throttling_maps_to_rate_limit():
    error = ClientError({"Error": {"Code": "ThrottlingException", "Message": "slow down"}}, "InvokeModel")
    service, _ = _service(error=error)
    with pytest.raises(ModelError) as exc:
        await service.complete(ConversationHistory([user_message("hi")]), [])
    assert exc.value.kind == "rate_limit"
    assert describe_model_error(exc.value).startswith("Rate limit exceeded")


@pytest.mark.asyncio
async def test_connection_failure_maps_to_network():
    service, _ = _service(error=EndpointConnectionError(endpoint_url="https://bedrock.invalid"))
    with pytest.raises(ModelError) as exc:
        await service.complete(ConversationHistory([user_message("hi")]), [])
    assert exc.value.kind == "network"
    assert describe_model_error(exc.value) == "Network error: unable to reach the model service"
