"""
Tests for the distro provider — command resolution per family.
"""

import pytest

from server_forge.core.distro import (
    SUPPORTED_FAMILIES,
    AptCapability,
    Command,
    DistroProvider,
    DnfCapability,
    YumCapability,
)
from server_forge.core.errors import UnsupportedActionError, UnsupportedDistroError


@pytest.fixture
def provider() -> DistroProvider:
    return DistroProvider()


class TestResolve:
    def test_apt_install_is_deterministic(self, provider):
        for _ in range(3):
            assert str(provider.resolve("install_package:nginx", "apt")) == "apt-get install -y nginx"

    @pytest.mark.parametrize(
        ("family", "expected"),
        [
            ("apt", "apt-get remove -y nginx"),
            ("yum", "yum remove -y nginx"),
            ("dnf", "dnf remove -y nginx"),
        ],
    )
    def test_remove_per_family(self, provider, family, expected):
        assert str(provider.resolve("remove_package", family, package="nginx")) == expected

    def test_query_uses_package_database(self, provider):
        assert provider.resolve("query_package:curl", "apt").argv == ["dpkg", "-s", "curl"]
        assert provider.resolve("query_package:curl", "dnf").argv == ["rpm", "-q", "curl"]

    def test_systemd_actions_shared(self, provider):
        for family in SUPPORTED_FAMILIES:
            assert str(provider.resolve("enable_service:nginx", family)) == "systemctl enable nginx"
        assert str(provider.resolve("daemon_reload", "yum")) == "systemctl daemon-reload"

    def test_upgrade_differs_by_family(self, provider):
        assert str(provider.resolve("upgrade_system", "yum")) == "yum update -y"
        assert str(provider.resolve("upgrade_system", "dnf")) == "dnf upgrade -y"

    def test_command_is_immutable(self, provider):
        command = provider.resolve("update_index", "apt")
        assert command == Command("apt-get", ("update",))
        with pytest.raises(AttributeError):
            command.program = "rm"


class TestFirewall:
    def test_ufw_rules(self, provider):
        assert str(provider.resolve("firewall_allow:OpenSSH", "apt")) == "ufw allow OpenSSH"
        assert str(provider.resolve("firewall_revoke:80/tcp", "apt")) == "ufw delete allow 80/tcp"

    def test_firewalld_port_rule(self, provider):
        command = provider.resolve("firewall_allow", "yum", rule="8080")
        assert command.argv == ["firewall-cmd", "--zone=public", "--permanent", "--add-port=8080/tcp"]

    def test_firewalld_service_rule(self, provider):
        command = provider.resolve("firewall_revoke:http", "dnf")
        assert command.argv[-1] == "--remove-service=http"

    def test_firewalld_keeps_explicit_protocol(self, provider):
        command = provider.resolve("firewall_allow:53/udp", "dnf")
        assert command.argv[-1] == "--add-port=53/udp"


class TestErrors:
    def test_unknown_family(self, provider):
        with pytest.raises(UnsupportedDistroError) as exc_info:
            provider.resolve("install_package:nginx", "pacman")
        assert exc_info.value.family == "pacman"

    def test_unknown_action(self, provider):
        with pytest.raises(UnsupportedActionError):
            provider.resolve("compile_kernel", "apt")

    def test_missing_parameter(self, provider):
        with pytest.raises(UnsupportedActionError, match="missing parameter"):
            provider.resolve("install_package", "apt")

    def test_positional_on_action_without_parameter(self, provider):
        with pytest.raises(UnsupportedActionError, match="no positional"):
            provider.resolve("update_index:now", "apt")


class TestAliases:
    @pytest.mark.parametrize(
        ("family", "expected"),
        [("apt", "unattended-upgrades"), ("yum", "yum-cron"), ("dnf", "dnf-automatic")],
    )
    def test_automatic_updates_package(self, provider, family, expected):
        assert provider.package_name("auto_updates", family) == expected

    def test_unknown_package_passes_through(self, provider):
        assert provider.package_name("nginx", "yum") == "nginx"

    def test_service_names(self, provider):
        assert provider.service_name("ssh", "apt") == "ssh"
        assert provider.service_name("ssh", "yum") == "sshd"
        assert provider.service_name("firewall", "dnf") == "firewalld"

    def test_config_path(self, provider):
        assert provider.config_path("auto_updates", "dnf") == "/etc/dnf/automatic.conf"
        with pytest.raises(UnsupportedActionError):
            provider.config_path("nonexistent", "apt")


class TestCapabilities:
    def test_one_capability_per_family(self, provider):
        assert isinstance(provider.capability("apt"), AptCapability)
        assert isinstance(provider.capability("yum"), YumCapability)
        assert isinstance(provider.capability("dnf"), DnfCapability)

    def test_all_families_support_the_same_actions(self, provider):
        actions = {family: set(provider.capability(family).actions) for family in SUPPORTED_FAMILIES}
        assert actions["apt"] == actions["yum"] == actions["dnf"]
