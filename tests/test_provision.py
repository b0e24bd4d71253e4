"""Tests for capability probing and provisioning."""

import pytest

from fakes import FakeRemoteHost
from shipyard.provision import (
    Capability,
    CapabilityProbe,
    CapabilityStatus,
    Provisioner,
    install_commands,
)
from shipyard.ssh import RemoteProbe


def facts_for(host):
    return RemoteProbe().collect(host.session())


def provisioner(**kwargs):
    kwargs.setdefault("sleep", lambda seconds: None)
    return Provisioner(CapabilityProbe(), **kwargs)


class TestCapabilityProbe:
    def test_present_when_binary_and_service_running(self):
        host = FakeRemoteHost()
        status = CapabilityProbe().probe(host.session(), Capability.DOCKER, facts_for(host))
        assert status is CapabilityStatus.PRESENT

    def test_absent_without_binary(self):
        host = FakeRemoteHost(binaries={"curl"})
        status = CapabilityProbe().probe(host.session(), Capability.DOCKER, facts_for(host))
        assert status is CapabilityStatus.ABSENT

    def test_broken_when_service_stopped(self):
        host = FakeRemoteHost(running={"nginx"})
        status = CapabilityProbe().probe(host.session(), Capability.DOCKER, facts_for(host))
        assert status is CapabilityStatus.BROKEN

    def test_process_check_without_systemd(self):
        host = FakeRemoteHost(systemd=False, running={"docker"})
        status = CapabilityProbe().probe(host.session(), Capability.DOCKER, facts_for(host))
        assert status is CapabilityStatus.PRESENT

    def test_probe_is_read_only(self):
        host = FakeRemoteHost(running=set())
        session = host.session()
        facts = facts_for(host)
        host.log.clear()
        CapabilityProbe().probe(session, Capability.DOCKER, facts)
        assert not any(line.startswith("sudo") or "enable" in line for line in host.log)

    def test_compose_command_prefers_plugin(self):
        host = FakeRemoteHost(binaries={"docker", "compose"})
        assert CapabilityProbe().compose_command(host.session()) == ("docker", "compose")

    def test_compose_command_missing(self):
        host = FakeRemoteHost(binaries={"docker"})
        assert CapabilityProbe().compose_command(host.session()) is None


class TestProvisioner:
    def test_ensure_is_idempotent(self):
        host = FakeRemoteHost(binaries={"curl"}, units=set(), running=set())
        session = host.session()
        facts = facts_for(host)
        prov = provisioner()

        first = prov.ensure(session, Capability.DOCKER, facts)
        second = prov.ensure(session, Capability.DOCKER, facts)

        assert first is CapabilityStatus.PRESENT
        assert second is first
        assert host.installed_packages == ["docker.io"]

    def test_present_capability_is_left_alone(self):
        host = FakeRemoteHost()
        session = host.session()
        facts = facts_for(host)
        host.log.clear()

        status = provisioner().ensure(session, Capability.DOCKER, facts)

        assert status is CapabilityStatus.PRESENT
        assert not host.commands_matching("apt-get")

    def test_force_reinstalls(self):
        host = FakeRemoteHost()
        status = provisioner().ensure(host.session(), Capability.DOCKER, facts_for(host), force=True)
        assert status is CapabilityStatus.PRESENT
        assert host.installed_packages == ["docker.io"]

    def test_broken_service_is_started(self):
        host = FakeRemoteHost(running={"nginx"})
        status = provisioner().ensure(host.session(), Capability.DOCKER, facts_for(host))
        assert status is CapabilityStatus.PRESENT
        assert host.commands_matching("systemctl enable --now docker")

    def test_broken_without_systemd_starts_daemon(self):
        host = FakeRemoteHost(systemd=False, running=set())
        status = provisioner().ensure(host.session(), Capability.DOCKER, facts_for(host))
        assert status is CapabilityStatus.PRESENT
        assert host.commands_matching("nohup")

    def test_falls_back_to_next_package(self):
        host = FakeRemoteHost(binaries={"curl"}, units=set(), running=set(), package_manager="dnf")
        host.fail("dnf install -y moby-engine", exit_status=1, stderr="No match for argument")
        status = provisioner().ensure(host.session(), Capability.DOCKER, facts_for(host))
        assert status is CapabilityStatus.PRESENT
        assert host.installed_packages == ["docker"]

    def test_failed_install_reports_absent(self):
        host = FakeRemoteHost(binaries={"curl"}, units=set(), running=set())
        host.fail("apt-get install", exit_status=100)
        status = provisioner().ensure(host.session(), Capability.DOCKER, facts_for(host))
        assert status is CapabilityStatus.ABSENT

    def test_apt_update_failure_only_warns(self):
        host = FakeRemoteHost(binaries={"curl"}, units=set(), running=set())
        host.fail("apt-get update", exit_status=100)
        status = provisioner().ensure(host.session(), Capability.DOCKER, facts_for(host))
        assert status is CapabilityStatus.PRESENT

    def test_service_unit_requires_systemd(self):
        host = FakeRemoteHost(systemd=False)
        installed = provisioner().install_service_unit(
            host.session(),
            "shop",
            description="shop",
            working_dir="/opt/app",
            start="/usr/bin/env docker start shop",
            stop="/usr/bin/env docker stop shop",
            facts=facts_for(host),
        )
        assert installed is False
        assert "/etc/systemd/system/shop.service" not in host.files


@pytest.mark.parametrize(
    "manager,expected",
    [
        ("apt-get", "apt-get install -y -o Dpkg::Options::=--force-confdef -o Dpkg::Options::=--force-confold nginx"),
        ("dnf", "dnf install -y nginx"),
        ("yum", "yum install -y nginx"),
        ("apk", "apk add --no-cache nginx"),
    ],
)
def test_install_commands_are_non_interactive(manager, expected):
    rendered = install_commands(manager, "nginx")[0].render(as_root=True)
    assert rendered.endswith(expected)


def test_unknown_package_manager():
    with pytest.raises(ValueError):
        install_commands("pacman", "nginx")
