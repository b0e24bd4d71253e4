"""
Error taxonomy for shipyard.

Every failure surfaced to the CLI names the step it happened in, the exit
status of the underlying command (when there is one) and a remediation hint.
"""

from __future__ import annotations

from typing import Optional, Sequence


class DeployError(Exception):
    """Base exception for all deployment errors."""

    def __init__(
        self,
        message: str,
        *,
        step: Optional[str] = None,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
    ) -> None:
        self.message = message
        self.step = step
        self.exit_code = exit_code
        self.hint = hint
        super().__init__(self.format_message())

    def with_step(self, step: str) -> "DeployError":
        """Attach the failing step name if the raiser did not know it."""
        if self.step is None:
            self.step = step
            self.args = (self.format_message(),)
        return self

    def format_message(self) -> str:
        details = []
        if self.step:
            details.append(f"step: {self.step}")
        if self.exit_code is not None:
            details.append(f"exit status {self.exit_code}")
        text = self.message
        if details:
            text = f"{text} ({', '.join(details)})"
        if self.hint:
            text = f"{text}\nHint: {self.hint}"
        return text

    def __str__(self) -> str:
        return self.format_message()


class ValidationError(DeployError):
    """Raised when user input fails validation. Never reaches the remote host."""

    def __init__(self, problems: Sequence[str] | str, **kwargs) -> None:
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        if len(self.problems) == 1:
            message = f"Invalid deployment parameters: {self.problems[0]}"
        else:
            message = "Invalid deployment parameters:\n  - " + "\n  - ".join(self.problems)
        kwargs.setdefault("step", "Validate")
        kwargs.setdefault("hint", "Fix the listed values and re-run.")
        super().__init__(message, **kwargs)


class ConnectError(DeployError):
    """Raised when the remote host is unreachable or rejects authentication."""

    pass


class RemoteTimeoutError(DeployError, TimeoutError):
    """Raised when a remote command produces no result within its timeout."""

    def __init__(self, command: str, timeout: float, **kwargs) -> None:
        self.command = command
        self.timeout = timeout
        kwargs.setdefault(
            "hint",
            "The command may be waiting for input or the host is overloaded; "
            "re-run with --verbose to see the last output.",
        )
        super().__init__(f"Remote command timed out after {timeout:g}s: {command}", **kwargs)


class RemoteCommandError(DeployError):
    """Raised when a checked remote command exits nonzero."""

    def __init__(self, command: str, exit_code: int, stderr: str = "", **kwargs) -> None:
        self.command = command
        self.stderr = stderr
        message = f"Remote command failed: {command}"
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, exit_code=exit_code, **kwargs)


class CapabilityMissingError(DeployError):
    """Raised when a mandatory remote capability is absent and cannot be repaired."""

    def __init__(self, capability: str, status: str, **kwargs) -> None:
        self.capability = capability
        self.status = status
        kwargs.setdefault(
            "hint",
            f"Install {capability} on the host manually or check the package manager output "
            "with --verbose.",
        )
        super().__init__(f"Required capability '{capability}' is {status}", **kwargs)


class BuildFilesMissingError(DeployError):
    """Raised when the staged repository has no recognized build manifest."""

    def __init__(self, source_dir: str, expected: Sequence[str], **kwargs) -> None:
        self.source_dir = source_dir
        self.expected = list(expected)
        kwargs.setdefault("step", "BuildFiles")
        kwargs.setdefault(
            "hint", "Add a Dockerfile or a compose file, or point --compose-file at one."
        )
        super().__init__(
            f"No build manifest found in {source_dir}; looked for: {', '.join(self.expected)}",
            **kwargs,
        )


class BranchNotFoundError(DeployError):
    """Raised when the branch exists neither locally nor on the remote."""

    def __init__(self, branch: str, available: Sequence[str], **kwargs) -> None:
        self.branch = branch
        self.available = list(available)
        listing = ", ".join(self.available) if self.available else "(none)"
        kwargs.setdefault("step", "Stage")
        kwargs.setdefault("hint", f"Available remote branches: {listing}")
        super().__init__(f"Branch '{branch}' does not exist locally or remotely", **kwargs)


class HealthCheckFailedError(DeployError):
    """Raised when the application is not running or reports itself unhealthy."""

    pass


class RollbackError(DeployError):
    """Raised when restoring a snapshot fails. Requires manual intervention."""

    def __init__(self, message: str, **kwargs) -> None:
        kwargs.setdefault(
            "hint",
            "The host may be in an intermediate state. Inspect it manually, then run "
            "'shipyard deploy --rollback' or redeploy.",
        )
        super().__init__(message, **kwargs)


class SnapshotNotFoundError(DeployError):
    """Raised when --rollback is requested but no snapshot record exists."""

    pass


class DeploymentLockedError(DeployError):
    """Raised when another run already holds the lock for the same target."""

    pass
