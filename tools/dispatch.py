"""Tool execution dispatch: argument validation, handler lookup, sequential execution."""

import dataclasses
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from cancellation import CancellationToken, OperationCancelled
from tools._common import ToolCall, ToolContext, ToolResult, cancelled_result
from tools.external_ops import (
    build_project, git_commit, git_fetch, git_log, git_pull, git_push, git_status, run_shell, web_search,
)
from tools.file_ops import delete_file, edit_file, list_files, make_directory, read_file, write_file
from tools.schemas import TOOL_DEFINITIONS, TOOL_SCHEMAS
from vfs import VFSError, NotFoundError

logger = logging.getLogger(__name__)

Handler = Callable[[BaseModel, ToolContext], Awaitable[ToolResult]]

TOOL_IMPLEMENTATIONS: Dict[str, Handler] = {
    "read_file": read_file,
    "write_file": write_file,
    "edit_file": edit_file,
    "list_files": list_files,
    "delete_file": delete_file,
    "make_directory": make_directory,
    "run_shell": run_shell,
    "build_project": build_project,
    "web_search": web_search,
    "git_status": git_status,
    "git_commit": git_commit,
    "git_fetch": git_fetch,
    "git_pull": git_pull,
    "git_push": git_push,
    "git_log": git_log,
}


def parse_arguments(raw: Any) -> Dict[str, Any]:
    """Arguments arrive as a mapping or a JSON object string."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"arguments are not valid JSON: {e.msg}") from e
    if not isinstance(raw, dict):
        raise ValueError(f"arguments must be an object, got {type(raw).__name__}")
    return raw


def _format_validation_error(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "arguments"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


class ToolExecutor:
    """Maps tool calls to handlers and normalizes every outcome into a ToolResult.

    Calls from one assistant turn run strictly one after another in request
    order. No exception escapes except asyncio cancellation of the caller.
    """

    def __init__(
        self,
        context: ToolContext,
        handlers: Optional[Dict[str, Handler]] = None,
    ):
        self.context = context
        self.handlers = dict(TOOL_IMPLEMENTATIONS if handlers is None else handlers)

    def definitions(self) -> List[Dict[str, Any]]:
        """Definitions for the tools this executor can run; run_shell lists the available builtins."""
        defs = []
        for d in TOOL_DEFINITIONS:
            if d["name"] not in self.handlers:
                continue
            if d["name"] == "run_shell":
                names = ", ".join(c["name"] for c in self.context.shell.available_commands())
                d = dict(d, description=f"{d['description']} Available commands: {names}.")
            defs.append(d)
        return defs

    async def execute(self, call: ToolCall, cancel_token: Optional[CancellationToken] = None) -> ToolResult:
        token = cancel_token or self.context.cancel_token
        if token.cancelled:
            return cancelled_result(call.id)

        handler = self.handlers.get(call.name)
        schema = TOOL_SCHEMAS.get(call.name)
        if handler is None or schema is None:
            return ToolResult(call.id, True, {"error": f"Unknown tool: {call.name}"})

        try:
            args = schema[1].model_validate(parse_arguments(call.arguments))
        except ValueError as e:
            # pydantic's ValidationError is a ValueError subclass
            detail = _format_validation_error(e) if isinstance(e, ValidationError) else str(e)
            logger.debug(f"Rejected {call.name} call {call.id}: {detail}")
            return ToolResult(call.id, True, {"error": f"Invalid arguments for {call.name}: {detail}"})

        ctx = dataclasses.replace(self.context, cancel_token=token)
        logger.debug(f"Dispatching tool {call.name} ({call.id})")
        try:
            result = await handler(args, ctx)
        except OperationCancelled:
            logger.info(f"Tool {call.name} ({call.id}) cancelled")
            return cancelled_result(call.id)
        except NotFoundError as e:
            result = ToolResult(call.id, True, {"error": str(e), "not_found": True})
        except VFSError as e:
            result = ToolResult(call.id, True, {"error": str(e)})
        except Exception as e:
            logger.exception(f"Tool execution error: {call.name}")
            result = ToolResult(call.id, True, {"error": f"Tool error: {e}"})
        if result.is_error:
            logger.warning(f"Tool {call.name} ({call.id}) failed: {result.payload.get('error', '')}")
        return dataclasses.replace(result, call_id=call.id)

    async def execute_all(
        self,
        calls: List[ToolCall],
        cancel_token: Optional[CancellationToken] = None,
        on_start: Optional[Callable[[ToolCall], None]] = None,
        on_result: Optional[Callable[[ToolCall, ToolResult], None]] = None,
    ) -> List[ToolResult]:
        """Run calls in order. Always returns exactly one result per call.

        Once the token fires, no further handler starts; the remaining calls
        get synthetic cancelled results.
        """
        token = cancel_token or self.context.cancel_token
        results: List[ToolResult] = []
        for call in calls:
            if token.cancelled:
                result = cancelled_result(call.id)
            else:
                if on_start is not None:
                    on_start(call)
                result = await self.execute(call, token)
            results.append(result)
            if on_result is not None:
                on_result(call, result)
        return results
