"""
Model provider module.
Defines the turn-completion contract the session depends on and the Amazon
Bedrock implementation of it (Anthropic messages format via invoke_model).
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import boto3
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)

from cancellation import CancellationToken, ensure_token
from config import model_config
from tools._common import ToolCall

if TYPE_CHECKING:
    from agent.history import ConversationHistory

logger = logging.getLogger(__name__)


# ============================================================
# Errors
# ============================================================

class ModelError(Exception):
    """Error raised by a model provider.

    kind is one of: network, auth, rate_limit, timeout, other.
    """

    def __init__(self, message: str, kind: str = "other"):
        super().__init__(message)
        self.kind = kind


class ModelTimeoutError(ModelError):
    def __init__(self, timeout: float):
        super().__init__(f"The model did not respond within {timeout:g} seconds", kind="timeout")
        self.timeout = timeout


def describe_model_error(exc: BaseException) -> str:
    """User-facing description of a failed completion."""
    kind = getattr(exc, "kind", "other")
    if kind == "network":
        return "Network error: unable to reach the model service"
    if kind == "auth":
        return "Authentication error: check your model credentials"
    if kind == "rate_limit":
        return "Rate limit exceeded. Please wait a moment before trying again."
    if kind == "timeout":
        return str(exc)
    return f"Model service error: {exc}"


# ============================================================
# Provider contract
# ============================================================

@dataclass
class Completion:
    """One model response: text, tool-call requests and/or reasoning."""
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    reasoning: str = ""
    stop_reason: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0

    def is_empty(self) -> bool:
        return not (self.text or "").strip() and not self.tool_calls and not (self.reasoning or "").strip()


class ModelProvider(ABC):
    """Anything that can complete a conversation turn."""

    @abstractmethod
    async def complete(
        self,
        history: "ConversationHistory",
        tools: List[Dict[str, Any]],
        *,
        system_prompt: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Completion:
        """Request a completion. Must honour cancel_token; raises ModelError on failure."""


# ============================================================
# Bedrock implementation
# ============================================================

_AUTH_ERROR_CODES = {
    "ExpiredTokenException", "InvalidSignatureException", "UnrecognizedClientException",
    "AccessDeniedException", "InvalidClientTokenId",
}
_RATE_LIMIT_CODES = {"ThrottlingException", "TooManyRequestsException", "ServiceQuotaExceededException"}


def _tool_input(arguments: Any) -> Dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    if isinstance(arguments, str) and arguments.strip():
        try:
            parsed = json.loads(arguments)
            return parsed if isinstance(parsed, dict) else {"value": parsed}
        except json.JSONDecodeError:
            return {"raw": arguments}
    return {}


def format_messages(history: "ConversationHistory") -> List[Dict[str, Any]]:
    """Convert history into alternating Anthropic user/assistant messages.

    Tool results become tool_result blocks in a user message; error and
    cancelled markers are not sent. Consecutive same-role messages are merged.
    """
    from agent.history import MARKER_ROLES, ROLE_ASSISTANT, ROLE_TOOL

    formatted: List[Dict[str, Any]] = []

    def _push(role: str, blocks: List[Dict[str, Any]]) -> None:
        if not blocks:
            return
        if formatted and formatted[-1]["role"] == role:
            formatted[-1]["content"].extend(blocks)
        else:
            formatted.append({"role": role, "content": list(blocks)})

    for msg in history:
        if msg.role in MARKER_ROLES:
            continue
        if msg.role == ROLE_ASSISTANT:
            blocks = []
            if (msg.content or "").strip():
                blocks.append({"type": "text", "text": msg.content})
            for call in msg.tool_calls:
                blocks.append({"type": "tool_use", "id": call.id, "name": call.name,
                               "input": _tool_input(call.arguments)})
            _push("assistant", blocks or [{"type": "text", "text": "(no content)"}])
        elif msg.role == ROLE_TOOL and msg.tool_result is not None:
            result = msg.tool_result
            _push("user", [{
                "type": "tool_result",
                "tool_use_id": result.call_id,
                "content": json.dumps(result.payload, default=str),
                "is_error": result.is_error,
            }])
        else:
            _push("user", [{"type": "text", "text": msg.content or "(no content)"}])
    return formatted


class BedrockService(ModelProvider):
    """
    Service class for Amazon Bedrock interactions.
    Calls are blocking boto3 requests, run in a worker thread.
    """

    def __init__(
        self,
        model_id: Optional[str] = None,
        region: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        client: Any = None,
    ):
        self.model_id = model_id or model_config.model_id
        self.region = region or model_config.region
        self.max_tokens = max_tokens or model_config.max_tokens
        self.temperature = temperature if temperature is not None else model_config.temperature
        self.client = client or self._create_client()
        logger.info(f"BedrockService initialized with model: {self.model_id}")

    def _create_client(self) -> Any:
        """Create and configure the Bedrock runtime client"""
        session_kwargs = {"region_name": self.region}
        if model_config.profile_name:
            session_kwargs["profile_name"] = model_config.profile_name
        try:
            session = boto3.Session(**session_kwargs)
            return session.client("bedrock-runtime")
        except (NoCredentialsError, PartialCredentialsError) as e:
            raise ModelError(f"AWS credentials not configured: {e}", kind="auth")

    def _format_request_body(
        self,
        history: "ConversationHistory",
        tools: List[Dict[str, Any]],
        system_prompt: Optional[str],
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": self.max_tokens,
            "messages": format_messages(history),
        }
        if system_prompt:
            body["system"] = system_prompt
        if tools:
            body["tools"] = tools
        if self.temperature is not None:
            body["temperature"] = self.temperature
        return body

    def _parse_response(self, response_body: Dict[str, Any]) -> Completion:
        """Parse the Anthropic response body, extracting thinking, text and tool_use blocks"""
        result = Completion()
        for block in response_body.get("content") or []:
            block_type = block.get("type", "")
            if block_type == "thinking":
                result.reasoning += block.get("thinking", "")
            elif block_type == "text":
                result.text += block.get("text", "")
            elif block_type == "tool_use":
                result.tool_calls.append(ToolCall(
                    id=block.get("id", ""), name=block.get("name", ""), arguments=block.get("input") or {},
                ))
        usage = response_body.get("usage") or {}
        result.input_tokens = usage.get("input_tokens", 0)
        result.output_tokens = usage.get("output_tokens", 0)
        result.stop_reason = response_body.get("stop_reason")
        return result

    def _invoke(self, body: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(f"Invoking model: {self.model_id}")
        try:
            response = self.client.invoke_model(
                modelId=self.model_id,
                body=json.dumps(body),
                contentType="application/json",
                accept="application/json",
            )
            return json.loads(response["body"].read())
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            error_message = e.response.get("Error", {}).get("Message", str(e))
            logger.error(f"Bedrock API error: {error_code} - {error_message}")
            if error_code in _AUTH_ERROR_CODES:
                raise ModelError(error_message, kind="auth") from e
            if error_code in _RATE_LIMIT_CODES:
                raise ModelError(error_message, kind="rate_limit") from e
            raise ModelError(f"Bedrock API error: {error_message}") from e
        except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError) as e:
            raise ModelError(str(e), kind="network") from e
        except (NoCredentialsError, PartialCredentialsError) as e:
            raise ModelError(str(e), kind="auth") from e

    async def complete(
        self,
        history: "ConversationHistory",
        tools: List[Dict[str, Any]],
        *,
        system_prompt: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Completion:
        token = ensure_token(cancel_token)
        body = self._format_request_body(history, tools, system_prompt)
        # The worker thread cannot be interrupted; on cancel its response is discarded.
        response_body = await token.run(asyncio.to_thread(self._invoke, body))
        return self._parse_response(response_body)
