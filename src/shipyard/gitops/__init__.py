"""Git operations helpers."""

from .manager import (
    GitCommandError,
    GitRepositoryManager,
    StageResult,
    authenticated_url,
    redact_url,
)

__all__ = [
    "GitCommandError",
    "GitRepositoryManager",
    "StageResult",
    "authenticated_url",
    "redact_url",
]
