"""
Tool definitions and implementations for the coding agent.
Each tool has a pydantic argument schema and an async handler; ToolExecutor
validates calls, runs them in order and turns every outcome into a ToolResult.
"""

from tools._common import (  # noqa: F401
    BuildPipeline,
    BuildResult,
    ToolCall,
    ToolContext,
    ToolResult,
    cancelled_result,
)
from tools.schemas import TOOL_DEFINITIONS, TOOL_SCHEMAS  # noqa: F401
from tools.dispatch import TOOL_IMPLEMENTATIONS, ToolExecutor, parse_arguments  # noqa: F401
