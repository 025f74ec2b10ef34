"""Tool argument schemas (pydantic) and the definitions sent to the model."""

from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------------

class ReadFileArgs(BaseModel):
    path: str = Field(..., min_length=1, description="File path relative to the project root")
    offset: Optional[int] = Field(None, ge=1, description="1-based line to start reading from")
    limit: Optional[int] = Field(None, ge=1, description="Maximum number of lines to return")


class WriteFileArgs(BaseModel):
    path: str = Field(..., min_length=1, description="File path relative to the project root")
    content: str = Field(..., description="Complete new file content")


class EditFileArgs(BaseModel):
    path: str = Field(..., min_length=1, description="File path relative to the project root")
    old_string: str = Field(..., min_length=1, description="Exact text to replace")
    new_string: str = Field(..., description="Replacement text")
    replace_all: bool = Field(False, description="Replace every occurrence instead of exactly one")


class ListFilesArgs(BaseModel):
    path: str = Field("/", description="Directory to list (default: project root)")
    recursive: bool = Field(False, description="List all files below the directory, honouring .gitignore")
    limit: int = Field(1000, ge=1, le=5000, description="Maximum files returned when recursive")


class DeleteFileArgs(BaseModel):
    path: str = Field(..., min_length=1, description="File or directory to delete")
    recursive: bool = Field(False, description="Required to delete a non-empty directory")


class MakeDirectoryArgs(BaseModel):
    path: str = Field(..., min_length=1, description="Directory to create (parents are created too)")


# ---------------------------------------------------------------------------
# Shell / build / web
# ---------------------------------------------------------------------------

class RunShellArgs(BaseModel):
    command: str = Field(..., min_length=1, description="Command line; supports &&, ||, ; and |")
    cwd: str = Field("/", description="Working directory for this call")


class BuildProjectArgs(BaseModel):
    entry_points: List[str] = Field(..., min_length=1, description="Entry files to bundle")


class WebSearchArgs(BaseModel):
    query: str = Field(..., min_length=1, description="Search query string")
    max_results: int = Field(5, ge=1, le=10, description="Number of results to return")


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------

class GitStatusArgs(BaseModel):
    pass


class GitCommitArgs(BaseModel):
    message: str = Field(..., description="Commit message")


class GitRemoteArgs(BaseModel):
    remote: str = Field("origin", description="Remote name")


class GitBranchRemoteArgs(GitRemoteArgs):
    branch: Optional[str] = Field(None, description="Branch (default: current upstream)")


class GitLogArgs(BaseModel):
    depth: int = Field(10, ge=1, le=100, description="Number of commits to return")


# name -> (description, argument model)
TOOL_SCHEMAS: Dict[str, Tuple[str, Type[BaseModel]]] = {
    "read_file": (
        "Read a text file from the project. Use offset/limit for large files.",
        ReadFileArgs,
    ),
    "write_file": (
        "Create or overwrite a file with the given content. Parent directories are created automatically.",
        WriteFileArgs,
    ),
    "edit_file": (
        "Replace an exact string in a file. old_string must match exactly once unless replace_all is set. "
        "Read the file first.",
        EditFileArgs,
    ),
    "list_files": (
        "List a directory. With recursive=true, list every file below it, skipping .gitignore'd paths.",
        ListFilesArgs,
    ),
    "delete_file": (
        "Delete a file, or a directory (recursive=true for non-empty directories).",
        DeleteFileArgs,
    ),
    "make_directory": (
        "Create a directory and any missing parents.",
        MakeDirectoryArgs,
    ),
    "run_shell": (
        "Run a command line in the sandboxed shell. Only builtin commands are available; "
        "no state survives between calls.",
        RunShellArgs,
    ),
    "build_project": (
        "Bundle the project from the given entry points and report build errors and output files.",
        BuildProjectArgs,
    ),
    "web_search": (
        "Search the web for current information. Returns top results with title, URL, and snippet.",
        WebSearchArgs,
    ),
    "git_status": (
        "Show the current branch, ahead/behind counts, changed files and remotes.",
        GitStatusArgs,
    ),
    "git_commit": (
        "Stage all changes and create a commit.",
        GitCommitArgs,
    ),
    "git_fetch": ("Fetch from a remote.", GitRemoteArgs),
    "git_pull": ("Pull (merge) from a remote.", GitBranchRemoteArgs),
    "git_push": ("Push to a remote.", GitBranchRemoteArgs),
    "git_log": ("Show recent commits.", GitLogArgs),
}


def _definition(name: str, description: str, model: Type[BaseModel]) -> Dict[str, Any]:
    schema = model.model_json_schema()
    schema.pop("title", None)
    schema.setdefault("properties", {})
    return {"name": name, "description": description, "input_schema": schema}


TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    _definition(name, description, model) for name, (description, model) in TOOL_SCHEMAS.items()
]
