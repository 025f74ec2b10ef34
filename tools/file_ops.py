"""File operation tools: read, write, edit, list, delete, mkdir."""

import difflib
import logging

from tools._common import ToolContext, ToolResult, fail, ok
from tools.gitignore import walk_visible
from tools.schemas import (
    DeleteFileArgs, EditFileArgs, ListFilesArgs, MakeDirectoryArgs, ReadFileArgs, WriteFileArgs,
)
from vfs import NotFoundError, display_path, normalize_path

logger = logging.getLogger(__name__)

_MAX_READ_CHARS = 200_000


async def read_file(args: ReadFileArgs, ctx: ToolContext) -> ToolResult:
    """Read a text file. offset/limit select a 1-based line window."""
    path = normalize_path(args.path)
    stat = await ctx.vfs.stat(path)
    if stat.is_directory:
        return fail(f"{display_path(path)} is a directory; use list_files", path=display_path(path))
    content = await ctx.vfs.read_text(path)
    lines = content.splitlines(keepends=True)
    total_lines = len(lines)
    payload = {"path": display_path(path), "size": stat.size, "total_lines": total_lines}

    if args.offset is not None or args.limit is not None:
        start = max((args.offset or 1) - 1, 0)
        end = start + (args.limit or total_lines)
        content = "".join(lines[start:end])
        payload["start_line"] = start + 1
        payload["end_line"] = min(end, total_lines)

    if len(content) > _MAX_READ_CHARS:
        content = content[:_MAX_READ_CHARS]
        payload["truncated"] = True
    payload["content"] = content
    return ok(payload)


async def write_file(args: WriteFileArgs, ctx: ToolContext) -> ToolResult:
    """Create or overwrite a file. Missing parent directories are created."""
    path = normalize_path(args.path)
    existed = await ctx.vfs.exists(path)
    data = args.content.encode("utf-8")
    await ctx.vfs.write_file(path, data)
    logger.debug(f"Wrote {len(data)} bytes to {display_path(path)}")
    return ok({"path": display_path(path), "bytes": len(data), "created": not existed})


def _compact_diff(old_content: str, new_content: str, path: str, max_lines: int = 60) -> str:
    """Generate a compact unified diff for display in the tool panel."""
    old_lines = old_content.splitlines(keepends=True)
    new_lines = new_content.splitlines(keepends=True)
    diff = list(difflib.unified_diff(old_lines, new_lines, fromfile=path, tofile=path, lineterm=""))
    if not diff:
        return ""
    if len(diff) > max_lines:
        diff = diff[:max_lines] + [f"... ({len(diff) - max_lines} more diff lines)"]
    return "\n".join(line.rstrip("\n") for line in diff)


async def edit_file(args: EditFileArgs, ctx: ToolContext) -> ToolResult:
    """Replace an exact string in a file. By default must match exactly one location.
    With replace_all=True, replaces every occurrence (useful for renames)."""
    path = normalize_path(args.path)
    shown = display_path(path)
    content = await ctx.vfs.read_text(path)
    count = content.count(args.old_string)
    if count == 0:
        return fail(
            f"old_string not found in {shown}. Ensure it matches exactly, including whitespace "
            "and indentation. Re-read the file to see current content.",
            path=shown,
        )
    if count > 1 and not args.replace_all:
        return fail(
            f"Found {count} occurrences of old_string in {shown}. Add more surrounding context "
            f"to make it unique, or set replace_all=true to replace all {count} occurrences.",
            path=shown,
        )
    if args.replace_all:
        new_content = content.replace(args.old_string, args.new_string)
    else:
        new_content = content.replace(args.old_string, args.new_string, 1)
    data = new_content.encode("utf-8")
    await ctx.vfs.write_file(path, data)
    return ok({
        "path": shown,
        "bytes": len(data),
        "replacements": count if args.replace_all else 1,
        "diff": _compact_diff(content, new_content, shown),
    })


async def list_files(args: ListFilesArgs, ctx: ToolContext) -> ToolResult:
    path = normalize_path(args.path)
    if not (await ctx.vfs.stat(path)).is_directory:
        return fail(f"{display_path(path)} is not a directory", path=display_path(path))
    if args.recursive:
        files = await walk_visible(ctx.vfs, path, limit=args.limit)
        return ok({
            "path": display_path(path),
            "files": [display_path(f) for f in files],
            "truncated": len(files) >= args.limit,
        })
    entries = []
    for name in await ctx.vfs.list_files(path):
        child = f"{path}/{name}" if path else name
        stat = await ctx.vfs.stat(child)
        entries.append({
            "name": name,
            "type": "directory" if stat.is_directory else "file",
            "size": stat.size,
        })
    return ok({"path": display_path(path), "entries": entries})


async def delete_file(args: DeleteFileArgs, ctx: ToolContext) -> ToolResult:
    path = normalize_path(args.path)
    if not path:
        return fail("Refusing to delete the project root")
    if await ctx.vfs.is_dir(path):
        await ctx.vfs.rmdir(path, recursive=args.recursive)
    else:
        await ctx.vfs.unlink(path)
    return ok({"path": display_path(path), "deleted": True})


async def make_directory(args: MakeDirectoryArgs, ctx: ToolContext) -> ToolResult:
    path = normalize_path(args.path)
    try:
        existed = (await ctx.vfs.stat(path)).is_directory
    except NotFoundError:
        existed = False
    await ctx.vfs.mkdir(path)
    return ok({"path": display_path(path), "created": not existed})
