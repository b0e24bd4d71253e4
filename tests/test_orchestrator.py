"""End-to-end runs of the deploy state machine against a simulated host."""

import json
import threading
from pathlib import Path

import pytest

from fakes import FakeGit, FakeHTTP, FakeRemoteHost, FakeSession
from shipyard.config import AppConfig
from shipyard.errors import ConnectError
from shipyard.orchestrator import (
    DeployEnvironment,
    DeployState,
    DeploymentConfig,
    DeploymentOrchestrator,
    RuntimeKind,
    Snapshot,
)
from shipyard.orchestrator.snapshot import render_record
from shipyard.workspace import WorkspaceManager

RECORD = "/opt/app/.shipyard/snapshot.env"
TOKEN = "ghp_0123456789abcdef"


def make_config(**overrides) -> DeploymentConfig:
    values = dict(
        repo_url="https://github.com/acme/shop.git",
        host="203.0.113.10",
        ssh_user="root",
        app_port=8000,
        app_name="shop",
        credential=TOKEN,
    )
    values.update(overrides)
    return DeploymentConfig(**values)


class Harness:
    def __init__(self, tmp_path: Path, host: FakeRemoteHost, git=None, http=None, **overrides) -> None:
        self.host = host
        self.git = git or FakeGit()
        self.http = http or FakeHTTP()
        self.sessions = []
        self.sleeps = []
        self.log_dir = tmp_path / "logs"
        self.env = DeployEnvironment(
            config=make_config(**overrides),
            settings=AppConfig(),
            workspace=WorkspaceManager(tmp_path / "workspace"),
            git=self.git,
            session_factory=self._session,
            http=self.http,
            sleep=self.sleeps.append,
        )

    def _session(self, target, listener):
        session = self.host.session(target, listener)
        self.sessions.append(session)
        return session

    def orchestrator(self, cancel_event=None) -> DeploymentOrchestrator:
        return DeploymentOrchestrator(self.env, log_dir=str(self.log_dir), cancel_event=cancel_event)

    @staticmethod
    def read_log(result) -> dict:
        return json.loads(Path(result.log_path).read_text(encoding="utf-8"))


def step_statuses(log: dict) -> list:
    return [(step["step_name"], step["status"]) for step in log["steps"]]


class TestSuccessfulDeployment:
    def test_fresh_host_reaches_done(self, tmp_path):
        host = FakeRemoteHost()
        harness = Harness(tmp_path, host)

        result = harness.orchestrator().run()

        assert result.succeeded
        assert result.exit_code == 0
        assert result.final_state is DeployState.DONE
        assert result.commit_sha == "a" * 40
        log = harness.read_log(result)
        ran = [name for name, status in step_statuses(log) if status == "success"]
        assert ran == [
            "Validate", "Stage", "BuildFiles", "Connect", "Provision", "Transfer",
            "Build", "Run", "HealthCheck", "ProxyConfigure", "Verify",
        ]
        assert ("Service", "skipped") in step_statuses(log)
        assert log["status"] == "success"
        assert log["final_state"] == "done"
        assert log["host_info"]["hostname"] == "web-1"

    def test_container_published_on_loopback_behind_proxy(self, tmp_path):
        host = FakeRemoteHost()
        result = Harness(tmp_path, host).orchestrator().run()

        assert result.succeeded
        run = host.commands_matching("docker run")[0]
        assert "-p 127.0.0.1:8000:8000" in run
        assert host.containers["shop"]["running"]
        site = host.files["/etc/nginx/sites-available/shop"]
        assert "proxy_pass http://127.0.0.1:8000;" in site
        assert "/etc/nginx/sites-enabled/default" not in host.files

    def test_snapshot_record_removed_after_success(self, tmp_path):
        host = FakeRemoteHost()
        host.add_container("shop")
        result = Harness(tmp_path, host).orchestrator().run()

        assert result.succeeded
        assert RECORD not in host.files
        assert "shop-previous" not in host.containers

    def test_token_never_written_to_log(self, tmp_path):
        host = FakeRemoteHost()
        result = Harness(tmp_path, host).orchestrator().run()

        text = Path(result.log_path).read_text(encoding="utf-8")
        assert TOKEN not in text
        assert json.loads(text)["config"]["token_provided"] is True

    def test_missing_nginx_degrades_to_warning(self, tmp_path):
        host = FakeRemoteHost(binaries={"docker", "curl"}, package_manager="apk")
        host.units.discard("nginx")
        host.running.discard("nginx")
        # apk 源里没有 nginx
        host.fail("apk add --no-cache nginx", exit_status=1, stderr="ERROR: unable to select packages")
        harness = Harness(tmp_path, host)

        result = harness.orchestrator().run()

        assert result.succeeded
        assert any("nginx" in warning for warning in result.warnings)
        assert "-p 8000:8000" in host.commands_matching("docker run")[0]
        log = harness.read_log(result)
        assert ("ProxyConfigure", "skipped") in step_statuses(log)
        assert harness.http.requests == []

    def test_missing_health_endpoint_is_a_warning(self, tmp_path):
        host = FakeRemoteHost(health_status="404")
        result = Harness(tmp_path, host).orchestrator().run()

        assert result.succeeded
        assert any("404" in warning for warning in result.warnings)

    def test_blocked_external_check_is_a_warning(self, tmp_path):
        import requests

        host = FakeRemoteHost()
        http = FakeHTTP(error=requests.ConnectionError("timed out"))
        result = Harness(tmp_path, host, http=http).orchestrator().run()

        assert result.succeeded
        assert any("firewall" in warning for warning in result.warnings)

    def test_installs_docker_when_absent(self, tmp_path):
        host = FakeRemoteHost(binaries={"curl", "nginx"}, units={"nginx"}, running={"nginx"})
        result = Harness(tmp_path, host).orchestrator().run()

        assert result.succeeded
        assert host.installed_packages == ["docker.io"]
        assert host.commands_matching("DEBIAN_FRONTEND=noninteractive apt-get update")

    def test_compose_project(self, tmp_path):
        host = FakeRemoteHost(binaries={"docker", "compose", "curl", "nginx"})
        git = FakeGit({"compose.yaml": "services:\n  web:\n    build: .\n", "Dockerfile": "FROM x\n"})
        result = Harness(tmp_path, host, git=git).orchestrator().run()

        assert result.succeeded
        release = host.links["/opt/app/current"]
        assert release.startswith("/opt/app/releases/")
        assert host.commands_matching(f"docker compose -p shop -f {release}/src/compose.yaml build")
        assert host.containers["shop-web-1"]["running"]

    def test_systemd_service_installed_when_requested(self, tmp_path):
        host = FakeRemoteHost()
        result = Harness(tmp_path, host, systemd_service="shop-app").orchestrator().run()

        assert result.succeeded
        unit = host.files["/etc/systemd/system/shop-app.service"]
        assert "ExecStart=/usr/bin/env docker start shop" in unit
        assert host.commands_matching("systemctl enable shop-app.service")


    def test_release_is_linked_and_previous_release_dropped(self, tmp_path):
        host = FakeRemoteHost()
        harness = Harness(tmp_path, host)
        assert harness.orchestrator().run().succeeded
        first = host.links["/opt/app/current"]

        harness.git.commit = "b" * 40
        assert harness.orchestrator().run().succeeded

        second = host.links["/opt/app/current"]
        assert second != first
        assert "b" * 12 in second
        assert f"{second}/src/.extracted" in host.files
        assert not [path for path in host.files if path.startswith(first + "/")]


class TestFailures:
    def test_missing_build_files_never_touches_host(self, tmp_path):
        host = FakeRemoteHost()
        harness = Harness(tmp_path, host, git=FakeGit({"README.md": "hello"}))

        result = harness.orchestrator().run()

        assert not result.succeeded
        assert result.exit_code == 1
        assert result.failed_step == "BuildFiles"
        assert result.final_state is DeployState.ABORTED
        assert harness.sessions == []
        assert host.log == []

    def test_invalid_config_fails_validation(self, tmp_path):
        host = FakeRemoteHost()
        harness = Harness(tmp_path, host, repo_url="ftp://example.com/repo", app_port=70000)

        result = harness.orchestrator().run()

        assert result.failed_step == "Validate"
        assert "repository URL" in result.error
        assert "application port" in result.error
        assert harness.git.calls == 0

    def test_run_failure_restores_previous_container(self, tmp_path):
        host = FakeRemoteHost()
        previous_id = host.add_container("shop")
        host.fail("docker run")
        harness = Harness(tmp_path, host)

        result = harness.orchestrator().run()

        assert not result.succeeded
        assert result.exit_code == 1
        assert result.failed_step == "Run"
        assert result.rolled_back
        assert result.final_state is DeployState.ROLLED_BACK
        assert host.containers["shop"]["id"] == previous_id
        assert host.containers["shop"]["running"]
        assert RECORD not in host.files
        log = harness.read_log(result)
        assert log["steps"][-1]["step_name"] == "Rollback"
        assert log["steps"][-1]["status"] == "success"

    def test_unhealthy_application_rolls_back(self, tmp_path):
        host = FakeRemoteHost(health_status="500")
        previous_id = host.add_container("shop")
        harness = Harness(tmp_path, host)

        result = harness.orchestrator().run()

        assert result.failed_step == "HealthCheck"
        assert result.rolled_back
        assert host.containers["shop"]["id"] == previous_id
        # 5 次尝试之间等待 4 次
        assert harness.sleeps == [3.0] * 4

    def test_rollback_failure_is_reported(self, tmp_path):
        host = FakeRemoteHost()
        host.add_container("shop")
        host.files["/etc/nginx/sites-available/shop"] = "old site"
        host.fail("nginx -t", stderr="nginx: [emerg] unexpected end of file")
        harness = Harness(tmp_path, host)

        result = harness.orchestrator().run()

        assert result.failed_step == "ProxyConfigure"
        # 回滚时 nginx -t 依然失败：需要人工介入
        assert result.rollback_error is not None
        assert not result.rolled_back
        assert result.final_state is DeployState.ABORTED

    def test_first_deploy_failure_removes_new_container(self, tmp_path):
        host = FakeRemoteHost(health_status="503")
        result = Harness(tmp_path, host).orchestrator().run()

        assert result.rolled_back
        assert "shop" not in host.containers

    def test_missing_docker_without_package_manager(self, tmp_path):
        host = FakeRemoteHost(binaries={"curl"}, units=set(), running=set(), package_manager="pacman")
        result = Harness(tmp_path, host).orchestrator().run()

        assert result.failed_step == "Provision"
        assert "docker" in result.error
        assert result.final_state is DeployState.ABORTED

    def test_connect_retries_transient_errors(self, tmp_path):
        host = FakeRemoteHost()

        class FlakySession(FakeSession):
            failures_left = 1

            def connect(self):
                if FlakySession.failures_left:
                    FlakySession.failures_left -= 1
                    raise ConnectError("Cannot connect: timed out", step="Connect")
                super().connect()

        harness = Harness(tmp_path, host)
        harness.env.session_factory = lambda target, listener: FlakySession(host, listener)

        result = harness.orchestrator().run()

        assert result.succeeded
        log = harness.read_log(result)
        connect = next(step for step in log["steps"] if step["step_name"] == "Connect")
        assert connect["attempts"] == 2
        assert harness.sleeps[0] == 5.0

    def test_cancelled_before_start(self, tmp_path):
        host = FakeRemoteHost()
        cancel = threading.Event()
        cancel.set()
        harness = Harness(tmp_path, host)

        result = harness.orchestrator(cancel_event=cancel).run()

        assert result.final_state is DeployState.ABORTED
        assert result.error == "Deployment cancelled"
        assert harness.git.calls == 0


    def test_proxy_failure_restores_default_site(self, tmp_path):
        host = FakeRemoteHost()
        previous_id = host.add_container("shop")
        # 只有第一次 nginx -t 失败，回滚时的检查能通过
        host.fail("nginx -t", stderr="nginx: [emerg] a duplicate default server", times=1)
        harness = Harness(tmp_path, host)

        result = harness.orchestrator().run()

        assert result.failed_step == "ProxyConfigure"
        assert result.rolled_back
        assert result.final_state is DeployState.ROLLED_BACK
        default = "/etc/nginx/sites-enabled/default"
        assert default in host.files
        assert host.links[default] == "/etc/nginx/sites-available/default"
        assert "/etc/nginx/sites-available/shop" not in host.files
        assert "/etc/nginx/sites-enabled/shop" not in host.files
        assert host.containers["shop"]["id"] == previous_id
        assert "/opt/app/.shipyard/default-site.previous" not in host.files
        assert RECORD not in host.files

    def test_interrupt_during_run_rolls_back(self, tmp_path):
        host = FakeRemoteHost()
        previous_id = host.add_container("shop")
        host.interrupt("docker run", KeyboardInterrupt())
        harness = Harness(tmp_path, host)

        result = harness.orchestrator().run()

        assert result.failed_step == "Run"
        assert result.error == "Interrupted by user"
        assert result.rolled_back
        assert result.final_state is DeployState.ROLLED_BACK
        assert host.containers["shop"]["id"] == previous_id
        assert host.containers["shop"]["running"]
        assert "shop-previous" not in host.containers
        assert RECORD not in host.files
        log = harness.read_log(result)
        assert ("Run", "failed") in step_statuses(log)
        assert log["steps"][-1]["step_name"] == "Rollback"
        assert log["final_state"] == "rolled_back"

    def test_unexpected_error_during_run_rolls_back(self, tmp_path):
        host = FakeRemoteHost()
        previous_id = host.add_container("shop")
        host.interrupt("docker run", RuntimeError("channel closed unexpectedly"))
        harness = Harness(tmp_path, host)

        result = harness.orchestrator().run()

        assert result.failed_step == "Run"
        assert "channel closed unexpectedly" in result.error
        assert result.rolled_back
        assert host.containers["shop"]["id"] == previous_id
        assert host.containers["shop"]["running"]

    def test_interrupt_before_destructive_step_aborts(self, tmp_path):
        host = FakeRemoteHost()
        previous_id = host.add_container("shop")
        host.interrupt("tar -xzf", KeyboardInterrupt())
        harness = Harness(tmp_path, host)

        result = harness.orchestrator().run()

        assert result.failed_step == "Transfer"
        assert result.final_state is DeployState.ABORTED
        assert not result.rolled_back
        assert host.containers["shop"]["id"] == previous_id
        assert host.containers["shop"]["running"]
        assert ("Transfer", "failed") in step_statuses(harness.read_log(result))

    def test_compose_rollback_uses_previous_release(self, tmp_path):
        host = FakeRemoteHost(binaries={"docker", "compose", "curl", "nginx"})
        env_file = tmp_path / "shop.env"
        env_file.write_text("SECRET=1\n", encoding="utf-8")
        git = FakeGit({"compose.yaml": "services:\n  web:\n    build: .\n", "Dockerfile": "FROM x\n"})
        harness = Harness(tmp_path, host, git=git, env_file=str(env_file))

        assert harness.orchestrator().run().succeeded
        first = host.links["/opt/app/current"]
        live_image = host.containers["shop-web-1"]["image"]

        git.files = {"compose.yaml": "services:\n  api:\n    build: ./api\n", "api/Dockerfile": "FROM y\n"}
        git.commit = "b" * 40
        host.health_status = "500"
        result = harness.orchestrator().run()

        assert result.failed_step == "HealthCheck"
        assert result.rolled_back
        assert result.final_state is DeployState.ROLLED_BACK
        up = host.commands_matching("up -d --no-build")[0]
        assert f"-f {first}/src/compose.yaml" in up
        assert f"--env-file {first}/.env" in up
        assert host.images["shop-rollback-web:previous"] == live_image
        assert host.links["/opt/app/current"] == first
        releases = {path.split("/")[4] for path in host.files if path.startswith("/opt/app/releases/")}
        assert releases == {first.split("/")[4]}
        assert RECORD not in host.files


class TestExplicitRollback:
    def test_restores_from_snapshot_record(self, tmp_path):
        host = FakeRemoteHost()
        host.add_container("shop")
        previous_id = host.add_container("shop-previous", running=False)
        host.files[RECORD] = render_record(
            Snapshot(
                app_name="shop",
                runtime=RuntimeKind.CONTAINER,
                created_at="2024-05-01T10:00:00",
                previous_image_ref="sha256:old",
                previous_container_id=previous_id,
            )
        )
        harness = Harness(tmp_path, host, repo_url="", app_port=0)

        result = harness.orchestrator().rollback()

        assert result.succeeded
        assert result.exit_code == 0
        assert result.final_state is DeployState.ROLLED_BACK
        assert host.containers["shop"]["id"] == previous_id
        assert host.containers["shop"]["running"]
        assert RECORD not in host.files

    def test_without_record_fails(self, tmp_path):
        host = FakeRemoteHost()
        result = Harness(tmp_path, host).orchestrator().rollback()

        assert not result.succeeded
        assert result.failed_step == "Rollback"
        assert "No snapshot record" in result.error


class TestDryRun:
    def test_lists_steps_without_executing(self, tmp_path):
        host = FakeRemoteHost()
        harness = Harness(tmp_path, host)

        lines = harness.orchestrator().dry_run()

        assert lines[0] == "1. Validate"
        assert any(line.startswith("8. Run [destructive") for line in lines)
        assert any("docker build -t shop:latest" in line for line in lines)
        assert harness.sessions == []
        assert harness.git.calls == 0
        assert not harness.log_dir.exists()


@pytest.mark.parametrize("user,expected", [("root", "docker build"), ("deploy", "sudo -n docker build")])
def test_sudo_prefix_follows_ssh_user(tmp_path, user, expected):
    host = FakeRemoteHost(user=user)
    result = Harness(tmp_path, host, ssh_user=user).orchestrator().run()

    assert result.succeeded
    assert host.commands_matching("docker build")[0].startswith(expected)
