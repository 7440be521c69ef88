"""
L0 Data — Command templates per package-manager family.

Maps canonical actions to argument lists. Templates use ``{package}``,
``{service}``, ``{rule}`` (and, for firewalld, ``{rule_flag}``)
placeholders that are filled in by ``DistroProvider.resolve``.
"""

from __future__ import annotations

SYSTEMD_COMMANDS: dict[str, list[str]] = {
    "enable_service": ["systemctl", "enable", "{service}"],
    "disable_service": ["systemctl", "disable", "{service}"],
    "start_service": ["systemctl", "start", "{service}"],
    "stop_service": ["systemctl", "stop", "{service}"],
    "restart_service": ["systemctl", "restart", "{service}"],
    "daemon_reload": ["systemctl", "daemon-reload"],
    "service_enabled": ["systemctl", "is-enabled", "--quiet", "{service}"],
    "service_active": ["systemctl", "is-active", "--quiet", "{service}"],
}

FAMILY_COMMANDS: dict[str, dict[str, list[str]]] = {
    "apt": {
        "update_index": ["apt-get", "update"],
        "upgrade_system": ["apt-get", "upgrade", "-y"],
        "install_package": ["apt-get", "install", "-y", "{package}"],
        "remove_package": ["apt-get", "remove", "-y", "{package}"],
        "query_package": ["dpkg", "-s", "{package}"],
        "firewall_enable": ["ufw", "--force", "enable"],
        "firewall_disable": ["ufw", "disable"],
        "firewall_allow": ["ufw", "allow", "{rule}"],
        "firewall_revoke": ["ufw", "delete", "allow", "{rule}"],
        "firewall_reload": ["ufw", "reload"],
    },
    "yum": {
        "update_index": ["yum", "makecache"],
        "upgrade_system": ["yum", "update", "-y"],
        "install_package": ["yum", "install", "-y", "{package}"],
        "remove_package": ["yum", "remove", "-y", "{package}"],
        "query_package": ["rpm", "-q", "{package}"],
        "firewall_enable": ["systemctl", "enable", "--now", "firewalld"],
        "firewall_disable": ["systemctl", "disable", "--now", "firewalld"],
        "firewall_allow": ["firewall-cmd", "--zone=public", "--permanent", "{rule_flag}"],
        "firewall_revoke": ["firewall-cmd", "--zone=public", "--permanent", "{rule_flag}"],
        "firewall_reload": ["firewall-cmd", "--reload"],
    },
    "dnf": {
        "update_index": ["dnf", "makecache"],
        "upgrade_system": ["dnf", "upgrade", "-y"],
        "install_package": ["dnf", "install", "-y", "{package}"],
        "remove_package": ["dnf", "remove", "-y", "{package}"],
        "query_package": ["rpm", "-q", "{package}"],
        "firewall_enable": ["systemctl", "enable", "--now", "firewalld"],
        "firewall_disable": ["systemctl", "disable", "--now", "firewalld"],
        "firewall_allow": ["firewall-cmd", "--zone=public", "--permanent", "{rule_flag}"],
        "firewall_revoke": ["firewall-cmd", "--zone=public", "--permanent", "{rule_flag}"],
        "firewall_reload": ["firewall-cmd", "--reload"],
    },
}

# Actions whose first positional parameter (``install_package:nginx``)
# fills this placeholder
POSITIONAL_PARAM: dict[str, str] = {
    "install_package": "package",
    "remove_package": "package",
    "query_package": "package",
    "enable_service": "service",
    "disable_service": "service",
    "start_service": "service",
    "stop_service": "service",
    "restart_service": "service",
    "service_enabled": "service",
    "service_active": "service",
    "firewall_allow": "rule",
    "firewall_revoke": "rule",
}

# Canonical package names → per-family package names
PACKAGE_ALIASES: dict[str, dict[str, str]] = {
    "firewall": {"apt": "ufw", "yum": "firewalld", "dnf": "firewalld"},
    "auto_updates": {"apt": "unattended-upgrades", "yum": "yum-cron", "dnf": "dnf-automatic"},
    "access_control": {"apt": "apparmor", "yum": "policycoreutils", "dnf": "policycoreutils"},
    "access_control_utils": {
        "apt": "apparmor-utils",
        "yum": "policycoreutils-python-utils",
        "dnf": "policycoreutils-python-utils",
    },
    "node_exporter": {
        "apt": "prometheus-node-exporter",
        "yum": "node_exporter",
        "dnf": "golang-github-prometheus-node-exporter",
    },
    "docker": {"apt": "docker.io", "yum": "docker", "dnf": "moby-engine"},
}

# Canonical service names → per-family unit names
SERVICE_ALIASES: dict[str, dict[str, str]] = {
    "ssh": {"apt": "ssh", "yum": "sshd", "dnf": "sshd"},
    "firewall": {"apt": "ufw", "yum": "firewalld", "dnf": "firewalld"},
    "auto_updates": {"apt": "unattended-upgrades", "yum": "yum-cron", "dnf": "dnf-automatic.timer"},
    "node_exporter": {"apt": "prometheus-node-exporter", "yum": "node_exporter", "dnf": "node_exporter"},
    "grafana": {"apt": "grafana-server", "yum": "grafana-server", "dnf": "grafana-server"},
}

# Firewall rule that keeps SSH reachable, per family
SSH_FIREWALL_RULE: dict[str, str] = {"apt": "OpenSSH", "yum": "ssh", "dnf": "ssh"}

# Canonical config files → per-family paths
CONFIG_PATHS: dict[str, dict[str, str]] = {
    "auto_updates": {
        "apt": "/etc/apt/apt.conf.d/20auto-upgrades",
        "yum": "/etc/yum/yum-cron.conf",
        "dnf": "/etc/dnf/automatic.conf",
    },
    "auto_updates_timer": {
        "dnf": "/etc/systemd/system/dnf-automatic.timer.d/schedule.conf",
    },
    "nginx_site": {
        "apt": "/etc/nginx/sites-available/default",
        "yum": "/etc/nginx/conf.d/default.conf",
        "dnf": "/etc/nginx/conf.d/default.conf",
    },
    "apache_site": {
        "apt": "/etc/apache2/sites-available/000-default.conf",
        "yum": "/etc/httpd/conf.d/default-site.conf",
        "dnf": "/etc/httpd/conf.d/default-site.conf",
    },
    "fail2ban_auth_log": {
        "apt": "/var/log/auth.log",
        "yum": "/var/log/secure",
        "dnf": "/var/log/secure",
    },
}
