"""Shell, build, web search and git tools."""

import asyncio
import logging
from typing import Any, Dict

from duckduckgo_search import DDGS

from config import app_config
from git_sync import AuthenticationRequiredError, ConcurrentOperationError, GitCommandError
from tools._common import ToolContext, ToolResult, fail, ok
from tools.schemas import (
    BuildProjectArgs, GitBranchRemoteArgs, GitCommitArgs, GitLogArgs, GitRemoteArgs,
    GitStatusArgs, RunShellArgs, WebSearchArgs,
)

logger = logging.getLogger(__name__)

_MAX_OUTPUT_CHARS = 20000


def _truncate(text: str) -> str:
    if len(text) <= _MAX_OUTPUT_CHARS:
        return text
    return text[:10000] + "\n\n... [truncated] ...\n\n" + text[-5000:]


async def run_shell(args: RunShellArgs, ctx: ToolContext) -> ToolResult:
    """Execute a command line in the sandboxed shell. Non-zero exit is a tool error."""
    try:
        result = await ctx.cancel_token.run(asyncio.wait_for(
            ctx.shell.execute(args.command, cwd=args.cwd, cancel_token=ctx.cancel_token),
            timeout=app_config.shell_timeout,
        ))
    except asyncio.TimeoutError:
        return fail(f"Command timed out after {app_config.shell_timeout:g}s", exit_code=124)
    payload = result.to_payload()
    payload["stdout"] = _truncate(payload["stdout"])
    payload["stderr"] = _truncate(payload["stderr"])
    return ToolResult(call_id="", is_error=result.exit_code != 0, payload=payload)


async def build_project(args: BuildProjectArgs, ctx: ToolContext) -> ToolResult:
    if ctx.builder is None:
        return fail("No build pipeline is configured for this project")
    result = await ctx.cancel_token.run(ctx.builder.build(list(args.entry_points), ctx.vfs))
    payload = {"errors": list(result.errors), "output_files": list(result.output_files)}
    if result.errors:
        payload["error"] = f"Build failed with {len(result.errors)} error(s)"
    return ToolResult(call_id="", is_error=bool(result.errors), payload=payload)


def _ddgs_text(query: str, max_results: int) -> list:
    with DDGS() as ddgs:
        return list(ddgs.text(query, max_results=max_results))


async def web_search(args: WebSearchArgs, ctx: ToolContext) -> ToolResult:
    """Search the web via duckduckgo_search."""
    query = args.query.strip()
    if not query:
        return fail("query is required")
    results = await ctx.cancel_token.run(asyncio.to_thread(_ddgs_text, query, args.max_results))
    return ok({
        "query": query,
        "results": [
            {
                "title": (r.get("title") or "").strip(),
                "url": (r.get("href") or r.get("link") or "").strip(),
                "snippet": (r.get("body") or "").strip()[:400],
            }
            for r in results
        ],
    })


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------

def _git_error(e: Exception) -> ToolResult:
    if isinstance(e, ConcurrentOperationError):
        return fail(f"Sync already in progress ({e.active_operation})", active_operation=e.active_operation)
    if isinstance(e, AuthenticationRequiredError):
        return fail(str(e), origin=e.origin, auth_required=True)
    if isinstance(e, GitCommandError):
        return fail(str(e), exit_code=e.exit_code)
    return fail(str(e))


async def _require_repo(ctx: ToolContext) -> None:
    if ctx.git is None:
        raise RuntimeError("Git is not available for this project")
    if ctx.git.backend.needs_disk and ctx.vfs.root is None:
        raise RuntimeError("Git is not available for this project: its files are not on disk")
    if not await ctx.git.is_repository(ctx.project_dir):
        raise RuntimeError("Not a git repository")


async def git_status(args: GitStatusArgs, ctx: ToolContext) -> ToolResult:
    await _require_repo(ctx)
    try:
        status = await ctx.git.status(ctx.project_dir)
    except GitCommandError as e:
        return _git_error(e)
    return ok(status.to_dict())


async def git_commit(args: GitCommitArgs, ctx: ToolContext) -> ToolResult:
    """Stage everything and commit. A clean tree is reported, not treated as an error."""
    await _require_repo(ctx)
    message = args.message.strip()
    if not message:
        return fail("Commit message cannot be empty")
    try:
        status = await ctx.git.status(ctx.project_dir)
        if status.branch is None:
            return fail("Cannot commit in detached HEAD state. Check out a branch first.")
        if not status.changed_files:
            return ok({"committed": False, "message": "No changes to commit. Working tree is clean."})
        sha = await ctx.git.commit(ctx.project_dir, message)
    except (ConcurrentOperationError, GitCommandError) as e:
        return _git_error(e)

    counts: Dict[str, int] = {"added": 0, "modified": 0, "deleted": 0}
    for kind in status.changed_files.values():
        if kind in ("A", "U"):
            counts["added"] += 1
        elif kind == "D":
            counts["deleted"] += 1
        else:
            counts["modified"] += 1
    logger.info(f"Committed {sha[:7]} on {status.branch} in {ctx.project_dir}")
    return ok(dict(counts, committed=True, sha=sha, short_sha=sha[:7], branch=status.branch, message=message))


async def _network(op: str, ctx: ToolContext, **kwargs: Any) -> ToolResult:
    await _require_repo(ctx)
    call = getattr(ctx.git, op)
    try:
        await call(ctx.project_dir, cancel_token=ctx.cancel_token, **kwargs)
    except (ConcurrentOperationError, AuthenticationRequiredError, GitCommandError) as e:
        return _git_error(e)
    return ok({"operation": op, "remote": kwargs.get("remote", "origin"), "success": True})


async def git_fetch(args: GitRemoteArgs, ctx: ToolContext) -> ToolResult:
    return await _network("fetch", ctx, remote=args.remote)


async def git_pull(args: GitBranchRemoteArgs, ctx: ToolContext) -> ToolResult:
    return await _network("pull", ctx, remote=args.remote, branch=args.branch)


async def git_push(args: GitBranchRemoteArgs, ctx: ToolContext) -> ToolResult:
    return await _network("push", ctx, remote=args.remote, branch=args.branch)


async def git_log(args: GitLogArgs, ctx: ToolContext) -> ToolResult:
    await _require_repo(ctx)
    commits = await ctx.git.log(ctx.project_dir, args.depth)
    return ok({"commits": [
        {"sha": c.sha, "message": c.message, "author": c.author, "date": c.date} for c in commits
    ]})
