"""
File renderers for config-file steps.

Every renderer has the ``render(configuration, previous)`` shape that
``config_file_step`` expects. ``previous`` is the file's current content
(None when absent), so renderers that edit a file in place keep the
rest of it intact.
"""

from __future__ import annotations

import json
import re
from typing import Callable, Sequence

import yaml

from server_forge.core.data.distro_commands import CONFIG_PATHS
from server_forge.core.models.configuration import Configuration

# ── SSH ─────────────────────────────────────────────────────────

SSHD_HARDENING: dict[str, str] = {
    "PermitRootLogin": "no",
    "PasswordAuthentication": "no",
}


def set_directives(previous: str | None, directives: dict[str, str], sep: str = " ") -> str:
    """Set ``key value`` directives, uncommenting or appending as needed.

    The first line mentioning a key (commented or not) is replaced, later
    duplicates are left untouched.
    """
    lines = (previous or "").splitlines()
    delimiter = re.escape(sep.strip()) if sep.strip() else r"\s"
    for key, value in directives.items():
        pattern = re.compile(rf"^\s*#?\s*{re.escape(key)}\s*{delimiter}")
        wanted = f"{key}{sep}{value}"
        for i, line in enumerate(lines):
            if pattern.match(line):
                lines[i] = wanted
                break
        else:
            lines.append(wanted)
    return "\n".join(lines) + "\n"


def sshd_config(configuration: Configuration, previous: str | None) -> str:
    return set_directives(previous, SSHD_HARDENING)


# ── fail2ban ────────────────────────────────────────────────────


def fail2ban_jail(configuration: Configuration, previous: str | None) -> str:
    logpath = CONFIG_PATHS["fail2ban_auth_log"][configuration.distro_family]
    maxretry = 3 if configuration.security_level == "basic" else 2
    return (
        "[sshd]\n"
        "enabled = true\n"
        "port = ssh\n"
        "filter = sshd\n"
        f"logpath = {logpath}\n"
        f"maxretry = {maxretry}\n"
        "bantime = 3600\n"
    )


# ── SELinux ─────────────────────────────────────────────────────


def selinux_config(configuration: Configuration, previous: str | None) -> str:
    return set_directives(
        previous, {"SELINUX": "enforcing", "SELINUXTYPE": "targeted"}, sep="="
    )


# ── Automatic updates ───────────────────────────────────────────

_APT_PERIODS = {"daily": 1, "weekly": 7, "monthly": 30}


def auto_updates_config(configuration: Configuration, previous: str | None) -> str:
    """Per-family unattended update settings.

    apt gets a fresh ``20auto-upgrades`` whose period follows the update
    schedule; yum-cron and dnf-automatic get ``apply_updates = yes``
    edited into their existing file. dnf-automatic takes its schedule from
    a timer drop-in (``dnf_automatic_timer``). yum-cron has no schedule
    setting: the package runs it from /etc/cron.daily.
    """
    if configuration.distro_family == "apt":
        days = _APT_PERIODS.get(configuration.update_schedule, 1)
        return (
            f'APT::Periodic::Update-Package-Lists "{days}";\n'
            f'APT::Periodic::Unattended-Upgrade "{days}";\n'
        )
    if previous is None:
        return "[commands]\napply_updates = yes\n"
    return set_directives(previous, {"apply_updates": "yes"}, sep=" = ")


def dnf_automatic_timer(configuration: Configuration, previous: str | None) -> str:
    # The empty OnCalendar= clears the packaged schedule
    return f"[Timer]\nOnCalendar=\nOnCalendar={configuration.update_schedule}\n"


# ── Monitoring ──────────────────────────────────────────────────


def prometheus_config(configuration: Configuration, previous: str | None) -> str:
    document = {
        "global": {"scrape_interval": "15s"},
        "scrape_configs": [
            {"job_name": "node", "static_configs": [{"targets": ["localhost:9100"]}]},
        ],
    }
    return yaml.safe_dump(document, sort_keys=False)


# ── Backups ─────────────────────────────────────────────────────

BACKUP_DIRECTORIES: dict[str, list[str]] = {
    "web": ["/var/www", "/etc/nginx", "/etc/apache2"],
    "database": ["/var/lib/mysql", "/var/lib/postgresql"],
    "application": ["/opt", "/etc"],
}

BACKUP_REPOSITORY = "/var/backups/restic"
BACKUP_PASSWORD_FILE = "/etc/restic/password"

_CRON_SCHEDULES = {
    "hourly": "0 * * * *",
    "daily": "0 2 * * *",
    "weekly": "0 2 * * 0",
}


def backup_script(configuration: Configuration, previous: str | None) -> str:
    dirs = " ".join(BACKUP_DIRECTORIES.get(configuration.server_role, []))
    return (
        "#!/bin/bash\n"
        "set -euo pipefail\n\n"
        f"export RESTIC_REPOSITORY={BACKUP_REPOSITORY}\n"
        f"export RESTIC_PASSWORD_FILE={BACKUP_PASSWORD_FILE}\n\n"
        "restic snapshots >/dev/null 2>&1 || restic init\n"
        f"restic backup {dirs} --tag serverforge\n"
    )


def backup_cron(configuration: Configuration, previous: str | None) -> str:
    schedule = _CRON_SCHEDULES[configuration.backup_frequency]
    return f"{schedule} root /usr/local/bin/run-backup.sh >> /var/log/restic.log 2>&1\n"


# ── Security scans ──────────────────────────────────────────────

SECURITY_SCAN_SCRIPT = """#!/bin/bash
rkhunter --check --skip-keypress
chkrootkit
"""

SECURITY_SCAN_CRON = (
    "0 2 * * 0 root /usr/local/bin/security_scan.sh > /var/log/security_scan.log 2>&1\n"
)


# ── Containers ──────────────────────────────────────────────────


def docker_daemon_config(configuration: Configuration, previous: str | None) -> str:
    document = {
        "log-driver": "json-file",
        "log-opts": {"max-size": "100m", "max-file": "3"},
        "default-ulimits": {"nofile": {"Name": "nofile", "Hard": 64000, "Soft": 64000}},
    }
    return json.dumps(document, indent=2) + "\n"


def kubernetes_deployment(app: str) -> str:
    """Deployment manifest running ``<app>:latest`` with one replica."""
    document = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": app},
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": {"app": app}},
            "template": {
                "metadata": {"labels": {"app": app}},
                "spec": {
                    "containers": [
                        {"name": app, "image": f"{app}:latest", "ports": [{"containerPort": 80}]},
                    ],
                },
            },
        },
    }
    return yaml.safe_dump(document, sort_keys=False)


# ── Web servers ─────────────────────────────────────────────────

NGINX_DEFAULT_SITE = """server {
    listen 80 default_server;
    listen [::]:80 default_server;
    root /var/www/html;
    index index.html index.htm index.nginx-debian.html;
    server_name _;
    location / {
        try_files $uri $uri/ =404;
    }
}
"""


def apache_default_site(configuration: Configuration, previous: str | None) -> str:
    if configuration.distro_family == "apt":
        error_log, access_log = "${APACHE_LOG_DIR}/error.log", "${APACHE_LOG_DIR}/access.log"
    else:
        error_log, access_log = "logs/error_log", "logs/access_log"
    return (
        "<VirtualHost *:80>\n"
        "    ServerAdmin webmaster@localhost\n"
        "    DocumentRoot /var/www/html\n"
        f"    ErrorLog {error_log}\n"
        f"    CustomLog {access_log} combined\n"
        "</VirtualHost>\n"
    )


# ── Setup record ────────────────────────────────────────────────


def saved_configuration(configuration: Configuration, previous: str | None) -> str:
    """The configuration in ``server-forge.yml`` form, loadable as-is."""
    return yaml.safe_dump({"server": configuration.model_dump(mode="json")}, sort_keys=False)


def setup_report(steps: Sequence[tuple[str, str]]) -> Callable[[Configuration, str | None], str]:
    """Renderer for the human-readable setup report.

    ``steps`` are the ``(id, label)`` pairs of the run's plan, listed
    under "Provisioning steps".
    """

    def render(configuration: Configuration, previous: str | None) -> str:
        lines = [
            "Server Setup Report",
            "===================",
            "",
            f"Distribution family: {configuration.distro_family}",
            f"Server role: {configuration.server_role}",
            f"Security level: {configuration.security_level}",
            f"Monitoring enabled: {'yes' if configuration.monitoring else 'no'}",
            f"Backup frequency: {configuration.backup_frequency}",
            f"Update schedule: {configuration.update_schedule}",
            f"Containerization: {configuration.containerization}",
            "",
            "Deployed applications:",
            *(f"- {app}" for app in configuration.applications or ("(none)",)),
            "",
            "Custom firewall rules:",
            *(f"- {rule}" for rule in configuration.firewall_rules or ("(none)",)),
            "",
            "Provisioning steps:",
            *(f"- {step_id}: {label}" for step_id, label in steps),
        ]
        return "\n".join(lines) + "\n"

    return render
