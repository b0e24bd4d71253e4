"""Local staging area for repositories."""

from .manager import WorkspaceContext, WorkspaceManager

__all__ = ["WorkspaceContext", "WorkspaceManager"]
