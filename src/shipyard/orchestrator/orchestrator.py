"""Deployment orchestrator: runs the deploy plan and keeps the deployment log."""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from ..errors import DeployError, RollbackError
from ..gitops import redact_url
from ..ssh.session import SSHCommandResult
from .models import (
    CommandRecord,
    DeployResult,
    DeployState,
    DeployStatus,
    RunState,
    StepResult,
    StepStatus,
)
from .step_executor import StepExecutor
from .steps import DeployEnvironment, DeployStep, build_plan, build_rollback_plan

logger = logging.getLogger(__name__)


class DeploymentOrchestrator:
    """
    部署编排器

    按顺序执行部署计划中的每个步骤，只有成功才前进；
    失败时如果有快照就回滚（RolledBack），否则中止（Aborted）。
    """

    def __init__(
        self,
        env: DeployEnvironment,
        log_dir: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.env = env
        self.log_dir = Path(log_dir) if log_dir else Path.cwd() / "deploy_logs"
        self.cancel_event = cancel_event or threading.Event()
        self.step_executor = StepExecutor(env, env.settings.retry)
        env.command_listener = self._record_command

        self.deployment_log: dict = {}
        self.current_log_file: Optional[Path] = None
        self._current_commands: Optional[List[CommandRecord]] = None

    def run(self) -> DeployResult:
        """Deploy: Validate -> Stage -> ... -> Verify."""
        return self._execute(build_plan(), mode="deploy")

    def rollback(self) -> DeployResult:
        """Explicit recovery from the on-host snapshot record."""
        return self._execute(build_rollback_plan(), mode="rollback")

    def dry_run(self) -> List[str]:
        """Planned steps and commands. Executes nothing, local or remote."""
        lines = []
        for index, step in enumerate(build_plan(), 1):
            marker = " [destructive: snapshot first]" if step.destructive else ""
            lines.append(f"{index}. {step.name}{marker}")
            lines.extend(f"     {line}" for line in step.describe(self.env))
        return lines

    def _execute(self, steps: List[DeployStep], mode: str) -> DeployResult:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._init_log(mode)
        state = RunState()
        current: Optional[DeployStep] = None
        step_open = False
        self.step_executor.snapshot = None

        logger.info("")
        logger.info("=" * 60)
        logger.info("🚀 %s %s -> %s", mode.upper(), self.env.config.app_name, self.env.config.host)
        logger.info("=" * 60)

        try:
            try:
                for index, step in enumerate(steps, 1):
                    current = step
                    if self.cancel_event.is_set():
                        return self._fail(state, step.name, "Deployment cancelled", mode)

                    logger.info("📍 Step %s/%s: %s", index, len(steps), step.name)
                    self._begin_step(step)
                    step_open = True
                    state, result = self.step_executor.execute(step, state)
                    self._log_step_result(step, result)
                    step_open = False
                    if result.warnings:
                        state = state.with_warnings(*result.warnings)

                    if result.status is StepStatus.FAILED:
                        return self._fail(state, step.name, result.error or "step failed", mode)
                    if result.status is StepStatus.SUCCESS:
                        state = state.advance(step.reached)
                        self.deployment_log["final_state"] = state.phase.value
                        if state.host_facts and "host_info" not in self.deployment_log:
                            self.deployment_log["host_info"] = state.host_facts.to_payload()
            except KeyboardInterrupt:
                logger.warning("Interrupted by user")
                return self._abandon(state, current, step_open, "Interrupted by user", mode)
            except Exception as exc:
                logger.exception("Unexpected error in step %s", current.name if current else "(start)")
                return self._abandon(state, current, step_open, f"Unexpected error: {exc}", mode)
            return self._succeed(state, mode)
        finally:
            self.env.close()

    def _abandon(
        self, state: RunState, step: Optional[DeployStep], step_open: bool, error: str, mode: str
    ) -> DeployResult:
        """A step raised instead of returning a result: fail it, rolling back if a snapshot exists."""
        if step is not None and step_open:
            self._log_step_result(step, StepResult.failed(error))
        # 快照在步骤执行前就已写到主机上，但还没回到 state 里
        if self.step_executor.snapshot is not None:
            state = state.update(snapshot=self.step_executor.snapshot)
        return self._fail(state, step.name if step else "", error, mode)

    def _succeed(self, state: RunState, mode: str) -> DeployResult:
        if mode == "deploy" and state.snapshot is not None:
            try:
                runtime = self.env.runtime_for_snapshot(state.snapshot, state)
                self.env.snapshots().discard(state.snapshot, runtime)
            except DeployError as exc:
                message = f"Could not discard the snapshot: {exc.message}"
                logger.warning(message)
                state = state.with_warnings(message)

        final_state = DeployState.ROLLED_BACK if mode == "rollback" else DeployState.DONE
        logger.info("=" * 60)
        if mode == "rollback":
            logger.info("✅ Rollback completed; previous deployment restored")
        else:
            logger.info("🎉 Deployment completed successfully!")
        for warning in state.warnings:
            logger.warning("⚠️ %s", warning)
        logger.info("=" * 60)

        self.deployment_log["final_state"] = final_state.value
        self.deployment_log["warnings"] = list(state.warnings)
        self._finalize_log(DeployStatus.SUCCESS.value)
        return DeployResult(
            status=DeployStatus.SUCCESS,
            final_state=final_state,
            log_path=self.current_log_file,
            warnings=list(state.warnings),
            rolled_back=mode == "rollback",
            commit_sha=state.commit_sha,
        )

    def _fail(self, state: RunState, step_name: str, error: str, mode: str) -> DeployResult:
        final_state = DeployState.ABORTED
        rolled_back = False
        rollback_error = None

        if mode == "deploy" and state.snapshot is not None:
            self._begin_step_named("Rollback")
            # 失败可能来自断开的连接：回滚前重新连接
            self.env.drop_connection()
            try:
                runtime = self.env.runtime_for_snapshot(state.snapshot, state)
                proxy = self.env.proxy() if state.snapshot.proxy_config_path else None
                self.env.snapshots().rollback(state.snapshot, runtime, proxy, state.host_facts)
                final_state = DeployState.ROLLED_BACK
                rolled_back = True
                self._log_step_result_named("Rollback", StepResult.succeeded())
            except DeployError as exc:
                if not isinstance(exc, RollbackError):
                    exc = RollbackError(str(exc), step="Rollback")
                rollback_error = str(exc)
                logger.critical("🔥 Rollback failed: %s", exc)
                self._log_step_result_named("Rollback", StepResult.failed(rollback_error))

        logger.info("=" * 60)
        logger.error("❌ %s failed at step %s", mode.capitalize(), step_name or "(start)")
        logger.info("Final state: %s", final_state.value)
        logger.info("=" * 60)

        self.deployment_log["final_state"] = final_state.value
        self.deployment_log["failed_step"] = step_name
        self.deployment_log["error"] = error
        self.deployment_log["rollback_error"] = rollback_error
        self.deployment_log["warnings"] = list(state.warnings)
        self._finalize_log(final_state.value)
        return DeployResult(
            status=DeployStatus.FAILED,
            final_state=final_state,
            failed_step=step_name,
            error=error,
            log_path=self.current_log_file,
            warnings=list(state.warnings),
            rolled_back=rolled_back,
            rollback_error=rollback_error,
            commit_sha=state.commit_sha,
        )

    def _record_command(self, result: SSHCommandResult) -> None:
        if self._current_commands is not None:
            self._current_commands.append(CommandRecord.from_result(result))
            self._save_log()

    def _init_log(self, mode: str) -> None:
        """初始化日志文件"""
        config = self.env.config
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.current_log_file = self.log_dir / f"deploy_{config.app_name}_{timestamp}.json"
        self.deployment_log = {
            "version": "1.0",
            "mode": mode,
            "repo_url": redact_url(config.repo_url),
            "branch": config.branch,
            "target": f"{config.ssh_user}@{config.host}:{config.ssh_port}",
            "app_name": config.app_name,
            "start_time": datetime.now().isoformat(),
            "end_time": None,
            "status": "running",
            "final_state": DeployState.PENDING.value,
            "config": config.to_payload(),
            "steps": [],
        }
        logger.info("📝 Logging to: %s", self.current_log_file)
        self._save_log()

    def _begin_step(self, step: DeployStep) -> None:
        self._begin_step_named(step.name, destructive=step.destructive)

    def _begin_step_named(self, name: str, destructive: bool = False) -> None:
        self._current_commands = []
        self.deployment_log["steps"].append(
            {
                "step_name": name,
                "destructive": destructive,
                "status": StepStatus.RUNNING.value,
                "attempts": 0,
                "commands": [],
                "warnings": [],
                "outputs": {},
                "error": None,
                "timestamp": datetime.now().isoformat(),
            }
        )
        self._save_log()

    def _log_step_result(self, step: DeployStep, result: StepResult) -> None:
        self._log_step_result_named(step.name, result)

    def _log_step_result_named(self, name: str, result: StepResult) -> None:
        """更新最后一个步骤条目"""
        step_log = self.deployment_log["steps"][-1]
        step_log["step_name"] = name
        step_log["status"] = result.status.value
        step_log["attempts"] = result.attempts
        step_log["warnings"] = list(result.warnings)
        step_log["outputs"] = result.outputs
        step_log["error"] = result.error
        step_log["exit_code"] = result.exit_code
        step_log["timestamp"] = datetime.now().isoformat()
        self._save_log()
        self._current_commands = None

    def _finalize_log(self, status: str) -> None:
        """完成日志记录"""
        self.deployment_log["end_time"] = datetime.now().isoformat()
        self.deployment_log["status"] = status

        steps = self.deployment_log.get("steps", [])
        self.deployment_log["summary"] = {
            "total_steps": len(steps),
            "successful_steps": sum(1 for s in steps if s.get("status") == "success"),
            "total_commands": sum(len(s.get("commands", [])) for s in steps),
            "duration_seconds": self._calculate_duration(),
        }
        self._save_log()
        logger.info("📄 Log saved to: %s", self.current_log_file)

    def _calculate_duration(self) -> float:
        start = datetime.fromisoformat(self.deployment_log["start_time"])
        end = datetime.fromisoformat(self.deployment_log["end_time"])
        return (end - start).total_seconds()

    def _save_log(self) -> None:
        """保存日志到文件"""
        if not self.current_log_file:
            return
        steps = self.deployment_log.get("steps", [])
        if steps and self._current_commands is not None:
            steps[-1]["commands"] = [record.to_dict() for record in self._current_commands]
        with open(self.current_log_file, "w", encoding="utf-8") as f:
            json.dump(self.deployment_log, f, indent=2, ensure_ascii=False, default=str)


