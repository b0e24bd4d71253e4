"""Tests for the request -> config -> orchestrator workflow."""

import pytest

from fakes import FakeGit, FakeHTTP, FakeRemoteHost
from shipyard.config import AppConfig
from shipyard.errors import DeploymentLockedError, ValidationError
from shipyard.locks import TargetLock
from shipyard.orchestrator import DeployState
from shipyard.workflow import DeploymentRequest, DeploymentWorkflow


def make_request(**overrides):
    values = dict(
        repo_url="https://github.com/acme/shop.git",
        host="root@203.0.113.10",
        app_port=8000,
    )
    values.update(overrides)
    return DeploymentRequest(**values)


@pytest.fixture
def app_config(tmp_path):
    config = AppConfig()
    config.deployment.default_key_path = str(tmp_path / "no-such-key")
    return config


@pytest.fixture
def remote():
    return FakeRemoteHost()


@pytest.fixture
def workflow(tmp_path, app_config, remote):
    return DeploymentWorkflow(
        app_config,
        str(tmp_path / "workspace"),
        session_factory=lambda target, listener: remote.session(target, listener),
        http=FakeHTTP(),
        sleep=lambda seconds: None,
        git=FakeGit(),
        log_dir=str(tmp_path / "logs"),
        locks_dir=tmp_path / "locks",
    )


class TestBuildConfig:
    def test_defaults_are_filled(self, workflow):
        config = workflow.build_config(make_request())
        assert config.host == "203.0.113.10"
        assert config.ssh_user == "root"
        assert config.app_name == "shop"
        assert config.branch == "main"
        assert config.ssh_port == 22
        assert config.app_dir == "/opt/app"
        assert config.ssh_key_path is None
        assert config.credential is None

    def test_separate_user_and_configured_token(self, workflow, app_config):
        app_config.deployment.default_git_token = "ghp_configured_token"
        config = workflow.build_config(make_request(host="web-1.example.com", ssh_user="deploy"))
        assert (config.ssh_user, config.host) == ("deploy", "web-1.example.com")
        assert config.credential == "ghp_configured_token"

    def test_explicit_empty_token_disables_default(self, workflow, app_config):
        app_config.deployment.default_git_token = "ghp_configured_token"
        config = workflow.build_config(make_request(token=""))
        assert config.credential is None

    def test_missing_user_is_rejected(self, workflow):
        with pytest.raises(ValidationError):
            workflow.build_config(make_request(host="203.0.113.10"))

    def test_existing_default_key_is_used(self, workflow, app_config, tmp_path):
        key = tmp_path / "id_rsa"
        key.write_text("key", encoding="utf-8")
        app_config.deployment.default_key_path = str(key)
        assert workflow.build_config(make_request()).ssh_key_path == str(key)

    def test_proxy_needs_both_switches(self, workflow, app_config):
        assert workflow.build_config(make_request()).proxy_enabled
        assert not workflow.build_config(make_request(proxy_enabled=False)).proxy_enabled
        app_config.proxy.enabled = False
        assert not workflow.build_config(make_request()).proxy_enabled

    def test_missing_port_fails_validation_later(self, workflow):
        config = workflow.build_config(make_request(app_port=None))
        assert config.app_port == 0
        assert any("application port" in problem for problem in config.problems())


class TestDeploy:
    def test_deploy_succeeds_and_releases_lock(self, workflow, tmp_path, remote):
        result = workflow.deploy(make_request())

        assert result.succeeded
        assert result.final_state is DeployState.DONE
        assert result.log_path.parent == tmp_path / "logs"
        assert remote.containers["shop"]["running"]
        assert list((tmp_path / "locks").iterdir()) == []

    def test_concurrent_deploy_is_refused(self, workflow, tmp_path, remote):
        with TargetLock(tmp_path / "locks", "203.0.113.10"):
            with pytest.raises(DeploymentLockedError):
                workflow.deploy(make_request())
        assert remote.log == []

    def test_lock_key_ignores_case(self, workflow, tmp_path):
        with TargetLock(tmp_path / "locks", "web-1.example.com"):
            with pytest.raises(DeploymentLockedError):
                workflow.deploy(make_request(host="root@WEB-1.example.com"))

    def test_rollback_without_record(self, workflow):
        result = workflow.rollback(make_request(repo_url=None, app_port=None, app_name="shop"))
        assert not result.succeeded
        assert result.failed_step == "Rollback"

    def test_plan_touches_nothing(self, workflow, tmp_path, remote):
        lines = workflow.plan(make_request())
        assert lines[0] == "1. Validate"
        assert remote.log == []
        assert not (tmp_path / "workspace").exists()
        assert not (tmp_path / "logs").exists()
