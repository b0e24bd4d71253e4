"""Command-line interface for shipyard."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .config import AppConfig, load_config
from .errors import DeployError
from .interaction import CLIInteractionHandler, ParameterCollector
from .orchestrator import DeployResult
from .utils.logging import configure_logging
from .workflow import DeploymentRequest, DeploymentWorkflow

logger = logging.getLogger(__name__)

EXIT_INTERRUPTED = 130


@dataclass
class CLIContext:
    """Context captured from CLI arguments."""

    config: AppConfig
    workspace: str


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shipyard",
        description="Deploy a containerized git repository to a remote Linux host via SSH.",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a JSON config file overriding defaults.",
    )
    parser.add_argument(
        "--workspace",
        type=str,
        default=None,
        help="Directory for the local repository staging area.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    deploy_parser = subparsers.add_parser(
        "deploy", help="Deploy a repository (or roll back the last deployment)"
    )

    # 目标主机
    deploy_parser.add_argument("--host", help="Remote target as user@host")
    deploy_parser.add_argument("--port", type=int, default=None, help="SSH port (default: 22)")
    deploy_parser.add_argument("--ssh-key", default=None, help="Path to the SSH private key")

    # 仓库
    deploy_parser.add_argument("--repo", default=None, help="Git repository URL")
    deploy_parser.add_argument("--branch", default=None, help="Branch to deploy (default: main)")
    deploy_parser.add_argument(
        "--token", default=None,
        help="Access token for HTTPS repositories (or set SHIPYARD_GIT_TOKEN)"
    )

    # 应用
    deploy_parser.add_argument("--app-name", default=None, help="Application name (default: repository name)")
    deploy_parser.add_argument("--app-port", type=int, default=None, help="Port the application listens on")
    deploy_parser.add_argument(
        "--app-dir", default=None,
        help="Remote deployment directory (default: /opt/app)"
    )
    deploy_parser.add_argument("--compose-file", default=None, help="Compose file to use, relative to the repository")
    deploy_parser.add_argument("--env-file", default=None, help="Local environment file to upload")
    deploy_parser.add_argument(
        "--install-docker", action="store_true",
        help="Reinstall the container runtime even if it is present"
    )
    deploy_parser.add_argument(
        "--systemd-service", default=None, metavar="NAME",
        help="Install a systemd unit that manages the application"
    )

    # 反向代理
    deploy_parser.add_argument("--no-proxy", action="store_true", help="Do not configure nginx")
    deploy_parser.add_argument("--server-name", default=None, help="nginx server_name (default: _)")

    # 运行模式
    deploy_parser.add_argument(
        "--dry-run", action="store_true",
        help="Print the planned steps and commands, execute nothing"
    )
    deploy_parser.add_argument(
        "--rollback", action="store_true",
        help="Restore the previous deployment from its snapshot"
    )
    deploy_parser.add_argument("--verbose", "-v", action="store_true", help="Log every remote command")
    deploy_parser.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    deploy_parser.add_argument(
        "--no-input", action="store_true",
        help="Never prompt; fail when a required value is missing"
    )

    # logs 子命令 - 查看部署日志
    logs_parser = subparsers.add_parser(
        "logs", help="View deployment logs"
    )
    logs_parser.add_argument(
        "--list", "-l", action="store_true", dest="list_logs",
        help="List all available logs"
    )
    logs_parser.add_argument(
        "--latest", action="store_true",
        help="Show the latest deployment log"
    )
    logs_parser.add_argument(
        "--file", "-f", type=str,
        help="Show a specific log file"
    )
    logs_parser.add_argument(
        "--summary", "-s", action="store_true",
        help="Show summary only (not command output)"
    )

    return parser


def _build_context(args: argparse.Namespace) -> CLIContext:
    config = load_config(args.config)
    workspace = args.workspace or config.deployment.workspace_root
    return CLIContext(
        config=config,
        workspace=workspace,
    )


def handle_logs_command(args: argparse.Namespace, context: CLIContext) -> int:
    """Handle the logs subcommand."""
    log_dir = Path(context.config.deployment.log_dir)

    if not log_dir.exists():
        print("📁 No deployment logs found. Run a deployment first.")
        return 0

    log_files = sorted(log_dir.glob("deploy_*.json"), key=lambda p: p.stat().st_mtime, reverse=True)

    if not log_files:
        print("📁 No deployment logs found.")
        return 0

    # 列出所有日志
    if args.list_logs:
        print(f"📁 Deployment logs in: {log_dir}\n")
        print(f"{'#':<4} {'Status':<14} {'Mode':<9} {'Application':<24} {'Time':<20} {'File'}")
        print("-" * 100)
        for i, log_file in enumerate(log_files, 1):
            try:
                with open(log_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
                status = data.get("status", "unknown")
                mode = data.get("mode", "deploy")
                app = data.get("app_name", "?")
                start_time = (data.get("start_time") or "")[:19].replace("T", " ")
                print(f"{i:<4} {_status_emoji(status)} {status:<12} {mode:<9} {app:<24} {start_time:<20} {log_file.name}")
            except (OSError, ValueError):
                print(f"{i:<4} ❓ {'error':<12} {'?':<9} {'?':<24} {'?':<20} {log_file.name}")
        return 0

    # 选择要显示的日志文件
    if args.file:
        target_file = Path(args.file)
        if not target_file.exists():
            # 尝试在 log_dir 中查找
            target_file = log_dir / args.file
        if not target_file.exists():
            print(f"❌ Log file not found: {args.file}")
            return 1
    else:
        # 默认显示最新的
        target_file = log_files[0]

    show_log_file(target_file, summary_only=args.summary)
    return 0


def _status_emoji(status: str) -> str:
    return {
        "success": "✅",
        "failed": "❌",
        "running": "🔄",
        "skipped": "⏭️",
        "rolled_back": "↩️",
        "aborted": "⛔",
    }.get(status, "❓")


def show_log_file(log_file: Path, summary_only: bool = False) -> None:
    """Display a deployment log file."""
    with open(log_file, "r", encoding="utf-8") as f:
        data = json.load(f)

    status = data.get("status", "unknown")

    print(f"\n{'='*60}")
    print(f"📄 Deployment Log: {log_file.name}")
    print(f"{'='*60}")
    print(f"🔗 Repository: {data.get('repo_url', 'N/A')} ({data.get('branch', '?')})")
    print(f"🖥️  Target:     {data.get('target', 'N/A')}")
    print(f"📦 App:        {data.get('app_name', 'N/A')} [{data.get('mode', 'deploy')}]")
    print(f"⏰ Started:    {data.get('start_time', 'N/A')}")
    print(f"⏱️  Ended:      {data.get('end_time', 'N/A')}")
    print(f"{_status_emoji(status)} Status:     {status} (final state: {data.get('final_state', '?')})")
    print(f"📊 Steps:      {len(data.get('steps', []))}")
    print(f"{'='*60}\n")

    for index, step in enumerate(data.get("steps", []), 1):
        step_status = step.get("status", "?")
        marker = " [destructive]" if step.get("destructive") else ""
        attempts = step.get("attempts", 1)
        retry_note = f" (attempts: {attempts})" if attempts and attempts > 1 else ""
        print(f"[{index}] {_status_emoji(step_status)} {step.get('step_name', '?')}{marker}{retry_note}")

        if step.get("error"):
            label = "⏭️ " if step_status == "skipped" else "❌"
            print(f"    {label} {step['error'].splitlines()[0]}")
        for warning in step.get("warnings", []):
            print(f"    ⚠️ {warning}")

        for command in step.get("commands", []):
            print(f"    $ {command.get('command', '')}")
            if summary_only:
                continue
            print(f"    Exit: {command.get('exit_code', '')}")
            stdout = (command.get("stdout") or "").strip()
            stderr = (command.get("stderr") or "").strip()
            if stdout:
                # 限制输出长度
                lines = stdout.split("\n")
                for line in lines[:10]:
                    print(f"    │ {line[:100]}")
                if len(lines) > 10:
                    print(f"    │ ... ({len(lines)} lines total)")
            if stderr and not command.get("success"):
                print("    ⚠️ stderr:")
                for line in stderr.split("\n")[:5]:
                    print(f"    │ {line[:100]}")
        print()

    summary = data.get("summary")
    if summary:
        print(
            f"Summary: {summary.get('successful_steps')}/{summary.get('total_steps')} steps succeeded, "
            f"{summary.get('total_commands')} commands, {summary.get('duration_seconds')}s"
        )
    if data.get("rollback_error"):
        print(f"🔥 Rollback error: {data['rollback_error']}")
    print(f"{'='*60}")
    print(f"📄 Full log: {log_file}")
    print(f"{'='*60}\n")


def _request_from_args(args: argparse.Namespace) -> DeploymentRequest:
    return DeploymentRequest(
        repo_url=args.repo,
        host=args.host,
        ssh_key=args.ssh_key,
        ssh_port=args.port,
        token=args.token,
        branch=args.branch,
        app_port=args.app_port,
        app_name=args.app_name,
        app_dir=args.app_dir,
        compose_file=args.compose_file,
        env_file=args.env_file,
        install_docker=args.install_docker,
        systemd_service=args.systemd_service,
        proxy_enabled=not args.no_proxy,
        server_name=args.server_name,
    )


def _needs_input(request: DeploymentRequest, context: CLIContext) -> bool:
    deployment = context.config.deployment
    return (
        not request.repo_url
        or not (request.host or deployment.default_host)
        or request.app_port is None
    )


def _print_result(result: DeployResult) -> None:
    print()
    if result.succeeded:
        print(f"✅ {result.final_state.value}")
    else:
        print(f"❌ Failed at step {result.failed_step or '?'} -> {result.final_state.value}")
        if result.error:
            print(f"   {result.error}")
        if result.rollback_error:
            print(f"🔥 Rollback failed, manual intervention required: {result.rollback_error}")
    for warning in result.warnings:
        print(f"⚠️ {warning}")
    if result.log_path:
        print(f"📄 Log: {result.log_path}")


def handle_deploy_command(args: argparse.Namespace, context: CLIContext) -> int:
    configure_logging(args.verbose)
    workflow = DeploymentWorkflow(
        config=context.config,
        workspace=context.workspace,
    )
    request = _request_from_args(args)

    interactive = not args.no_input and sys.stdin.isatty()
    if interactive and not args.rollback and not args.dry_run and _needs_input(request, context):
        collector = ParameterCollector(CLIInteractionHandler())
        request = collector.collect(
            request,
            default_branch=context.config.deployment.default_branch,
            default_key_path=context.config.deployment.default_key_path,
            assume_yes=args.yes,
        )

    if args.dry_run:
        print("📋 Planned steps (nothing will be executed):")
        for line in workflow.plan(request):
            print(f"   {line}")
        return 0

    if args.rollback:
        result = workflow.rollback(request)
    else:
        result = workflow.deploy(request)
    _print_result(result)
    return result.exit_code


def dispatch_command(args: argparse.Namespace) -> int:
    context = _build_context(args)

    if args.command == "logs":
        return handle_logs_command(args, context)

    if args.command == "deploy":
        return handle_deploy_command(args, context)

    raise ValueError(f"Unsupported command: {args.command}")


def run_cli(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return dispatch_command(args)
    except (DeployError, FileNotFoundError) as exc:
        configure_logging()
        logger.error("❌ %s", exc)
        return 1
    except KeyboardInterrupt:
        print("\n⛔ Interrupted")
        return EXIT_INTERRUPTED


def main() -> None:
    sys.exit(run_cli())
