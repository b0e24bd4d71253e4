"""Step executor: runs a single deploy step with its retry and snapshot policy."""

from __future__ import annotations

import logging
from typing import Callable, Optional, Tuple

from ..config import RetrySettings
from ..errors import ConnectError, DeployError, RemoteTimeoutError
from .models import RunState, Snapshot, StepResult
from .steps import DeployEnvironment, DeployStep

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (ConnectError, RemoteTimeoutError)


class StepExecutor:
    """
    步骤执行器

    - 破坏性步骤执行前先拍快照（快照失败则不执行该步骤）
    - 可重试步骤遇到连接/超时错误时按退避重试
    - DeployError 转换为失败结果，带上步骤名、退出码和提示
    """

    def __init__(
        self,
        env: DeployEnvironment,
        retry: Optional[RetrySettings] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.env = env
        self.retry = retry or RetrySettings()
        self.sleep = sleep or env.sleep
        # 最近一次破坏性步骤前拍的快照；步骤中途抛出异常时编排器靠它回滚
        self.snapshot: Optional[Snapshot] = None

    def execute(self, step: DeployStep, state: RunState) -> Tuple[RunState, StepResult]:
        skip_reason = step.applies(self.env, state)
        if skip_reason:
            logger.info("   ⏭️ Skipping: %s", skip_reason)
            return state, StepResult.skipped(skip_reason)

        if step.destructive:
            try:
                snapshot = step.snapshot(self.env, state)
            except DeployError as exc:
                exc.with_step(step.name)
                logger.error("   ❌ Could not snapshot before %s: %s", step.name, exc.message)
                return state, StepResult.failed(
                    f"Snapshot before destructive step failed: {exc}", exit_code=exc.exit_code
                )
            state = state.update(snapshot=snapshot)
            self.snapshot = snapshot

        attempts = max(1, self.retry.max_attempts) if step.retryable else 1
        for attempt in range(1, attempts + 1):
            try:
                new_state, result = step.run(self.env, state)
            except TRANSIENT_ERRORS as exc:
                exc.with_step(step.name)
                if attempt < attempts:
                    delay = self.retry.backoff_seconds * attempt
                    logger.warning(
                        "   🔄 %s (attempt %s/%s), retrying in %.0fs",
                        exc.message,
                        attempt,
                        attempts,
                        delay,
                    )
                    self.env.drop_connection()
                    self.sleep(delay)
                    continue
                return state, self._failed(exc, attempt)
            except DeployError as exc:
                exc.with_step(step.name)
                return state, self._failed(exc, attempt)
            result.attempts = attempt
            return new_state, result
        raise AssertionError("unreachable")

    @staticmethod
    def _failed(exc: DeployError, attempt: int) -> StepResult:
        logger.error("   ❌ %s", exc)
        result = StepResult.failed(str(exc), exit_code=exc.exit_code)
        result.attempts = attempt
        return result
