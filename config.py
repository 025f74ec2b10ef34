"""
Configuration module for the agent runtime.
Handles environment variables, model settings, git settings and the synthetic shell environment.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


DEFAULT_SYSTEM_PROMPT = (
    "You are a coding assistant working inside a project's virtual filesystem. "
    "Use the provided tools to read and modify files, run shell builtins and "
    "manage version control. Keep answers short and act through tools."
)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def _expand(path: str) -> str:
    return os.path.abspath(os.path.expanduser(path))


@dataclass
class AppConfig:
    """Application-specific configuration"""
    title: str = "Agent Runtime"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    projects_root: str = _expand(os.getenv("PROJECTS_ROOT", "~/.agent-runtime/projects"))
    sessions_dir: str = _expand(os.getenv("SESSIONS_DIR", "~/.agent-runtime/sessions"))
    # Model completions allowed per turn before the turn is stopped
    max_steps: int = int(os.getenv("MAX_STEPS", "50"))
    # Fixed client-side timeout for a single completion request (seconds)
    model_timeout: float = float(os.getenv("MODEL_TIMEOUT", "300"))
    # VFS directory that user attachments are written into
    attachments_dir: str = os.getenv("ATTACHMENTS_DIR", "/tmp")
    # False: one queued message per turn. True: drain the whole backlog into one turn.
    merge_queued_messages: bool = _env_bool("MERGE_QUEUED_MESSAGES")
    system_prompt: str = os.getenv("SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT)
    shell_timeout: float = float(os.getenv("SHELL_TIMEOUT", "30"))
    # Idle sessions beyond this count, or untouched for longer than max_session_age seconds, are evicted
    max_sessions: int = int(os.getenv("MAX_SESSIONS", "50"))
    max_session_age: float = float(os.getenv("MAX_SESSION_AGE", str(7 * 24 * 3600)))


@dataclass
class ModelConfig:
    """Model-specific configuration"""
    model_id: str = os.getenv("BEDROCK_MODEL_ID", "us.anthropic.claude-sonnet-4-5-20250929-v1:0")
    region: str = os.getenv("AWS_REGION", "us-east-1")
    max_tokens: int = int(os.getenv("MAX_TOKENS", "16000"))
    temperature: Optional[float] = float(os.getenv("TEMPERATURE", "1")) if os.getenv("TEMPERATURE") else None
    profile_name: str = os.getenv("AWS_PROFILE", "")


@dataclass
class GitConfig:
    """Git author, credential and transport settings"""
    author_name: str = os.getenv("GIT_AUTHOR_NAME", "agent-runtime")
    author_email: str = os.getenv("GIT_AUTHOR_EMAIL", "assistant@agent-runtime.local")
    # JSON list of {"protocol", "host", "username", "password"}
    credentials_file: str = os.getenv("GIT_CREDENTIALS_FILE", "")
    git_binary: str = os.getenv("GIT_BINARY", "git")
    network_timeout: float = float(os.getenv("GIT_NETWORK_TIMEOUT", "120"))


@dataclass
class ShellConfig:
    """Synthetic environment exposed to shell builtins. Never read from the real OS."""
    user: str = "agent"
    env: Dict[str, str] = field(default_factory=lambda: {
        "HOME": "/",
        "USER": "agent",
        "SHELL": "/bin/sh",
        "PATH": "/usr/bin:/bin",
        "LANG": "en_US.UTF-8",
        "TERM": "xterm-256color",
    })


# ============================================================
# Global config instances
# ============================================================

app_config = AppConfig()
model_config = ModelConfig()
git_config = GitConfig()
shell_config = ShellConfig()
