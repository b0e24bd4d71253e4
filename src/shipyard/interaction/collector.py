"""Collect missing deployment parameters from the operator."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, List, Optional, Tuple, TypeVar

from ..errors import ValidationError
from .. import validation
from .handler import InputType, InteractionRequest, UserInteractionHandler

logger = logging.getLogger(__name__)

T = TypeVar("T")

Validator = Callable[[str], Optional[str]]


def _as_port(value: str) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ParameterCollector:
    """
    参数收集器

    对缺失的必填参数逐个提问；每个问题最多尝试 max_attempts 次，
    最后展示汇总并要求确认（除非 assume_yes）。
    """

    def __init__(self, handler: UserInteractionHandler, max_attempts: int = 3) -> None:
        self.handler = handler
        self.max_attempts = max(1, max_attempts)

    def collect(self, request: T, *, default_branch: str = "main",
                default_key_path: str = "~/.ssh/id_rsa", assume_yes: bool = False) -> T:
        """Return a copy of ``request`` (a DeploymentRequest) with the gaps filled in."""
        changes = {}

        if not request.repo_url:
            changes["repo_url"] = self._ask(
                "repo_url",
                "Git repository URL",
                validation.validate_git_url,
                context="https://host/owner/repo.git or git@host:owner/repo.git",
            )
        repo_url = changes.get("repo_url", request.repo_url) or ""
        if request.token is None and repo_url.startswith("https://"):
            token = self._ask(
                "token",
                "Access token for the repository (leave empty for public repositories)",
                validation.validate_token,
                input_type=InputType.SECRET,
                optional=True,
            )
            changes["token"] = token or None
        if not request.branch:
            changes["branch"] = self._ask(
                "branch", "Branch to deploy", validation.validate_branch, default=default_branch
            )
        if not request.host:
            changes["host"] = self._ask("host", "Remote host (IP or hostname)", self._validate_host_spec)
        if "@" not in (changes.get("host") or request.host or "") and not request.ssh_user:
            changes["ssh_user"] = self._ask("ssh_user", "SSH user", validation.validate_user)
        if not request.ssh_key:
            changes["ssh_key"] = self._ask(
                "ssh_key", "SSH private key", validation.validate_ssh_key, default=default_key_path
            )
        if request.app_port is None:
            answer = self._ask(
                "app_port",
                "Application port inside the container",
                lambda value: validation.validate_port(_as_port(value), "application port"),
            )
            changes["app_port"] = int(answer)

        collected = replace(request, **changes)
        logger.debug("Collected parameters: %s", ", ".join(sorted(changes)) or "(none)")
        if not assume_yes:
            self._confirm(collected)
        return collected

    def _ask(
        self,
        key: str,
        question: str,
        validator: Validator,
        *,
        input_type: InputType = InputType.TEXT,
        default: Optional[str] = None,
        context: Optional[str] = None,
        optional: bool = False,
    ) -> str:
        problem = None
        for attempt in range(1, self.max_attempts + 1):
            prompt = InteractionRequest(
                question=question,
                input_type=input_type,
                context=problem or context,
                default=default,
                key=key,
            )
            response = self.handler.ask(prompt)
            if response.cancelled:
                raise ValidationError(f"input for {key} was cancelled")
            value = response.value.strip()
            if not value and optional:
                return ""
            if not value:
                problem = f"{question} is required"
            else:
                problem = validator(value)
            if problem is None:
                return value
            self.handler.notify(f"{problem} (attempt {attempt}/{self.max_attempts})", "warning")
        raise ValidationError(problem or f"no valid value for {key}")

    @staticmethod
    def _validate_host_spec(value: str) -> Optional[str]:
        _, _, host = value.rpartition("@")
        return validation.validate_host(host)

    def _confirm(self, request) -> None:
        self.handler.notify("Deployment summary:\n" + "\n".join(self.summary_lines(request)))
        response = self.handler.ask(
            InteractionRequest(
                question="Deploy with these parameters?",
                input_type=InputType.CONFIRM,
                default="y",
                key="confirm",
            )
        )
        if not response.confirmed:
            raise ValidationError("deployment was not confirmed")

    @staticmethod
    def summary_lines(request) -> List[str]:
        rows: List[Tuple[str, object]] = [
            ("Repository", request.repo_url),
            ("Branch", request.branch),
            ("Host", request.host),
            ("SSH user", request.ssh_user or "(from host)"),
            ("SSH key", request.ssh_key),
            ("App port", request.app_port),
            ("Token", "provided" if request.token else "none"),
        ]
        return [f"   {label:<11} {value}" for label, value in rows]
