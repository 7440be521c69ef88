"""
Step catalog — turns a Configuration into a populated StepRegistry.

Registration order is the plan's tie-break order, so steps are
registered in the order an operator would do the work by hand:

    system_update → essential_packages → firewall → ssh_hardening
    → fail2ban → access control → rootkit detection → automatic updates
    → monitoring → backups → containers | applications
    → saved configuration → setup report

Sections that the configuration turns off simply register nothing.
"""

from __future__ import annotations

import logging
from functools import partial

from server_forge.core.data.applications import (
    APPLICATION_RECIPES,
    ESSENTIAL_PACKAGES,
    MONITORING_PACKAGES,
)
from server_forge.core.data.distro_commands import CONFIG_PATHS, SSH_FIREWALL_RULE
from server_forge.core.distro.provider import Command
from server_forge.core.engine.context import StepContext
from server_forge.core.engine.registry import StepRegistry
from server_forge.core.errors import ConfigurationError
from server_forge.core.models.configuration import Configuration
from server_forge.core.models.step import Step, UndoToken
from server_forge.core.steps import templates
from server_forge.core.steps.builders import (
    SECRET_MODE,
    compensating,
    config_file_step,
    generate_secret,
    packages_step,
    secret_file_step,
    service_step,
)

logger = logging.getLogger(__name__)

K8S_MANIFEST_DIR = "/etc/server-forge/k8s"
SAVED_CONFIG_PATH = "/etc/server-forge/server-forge.yml"
REPORT_PATH = "/root/server-forge-report.txt"


def build_registry(configuration: Configuration) -> StepRegistry:
    """Register every step the configuration calls for.

    Raises:
        ConfigurationError: An application has no known recipe.
    """
    registry = StepRegistry()
    _register_base(registry)
    _register_security(registry, configuration)
    _register_updates(registry, configuration)
    if configuration.monitoring:
        _register_monitoring(registry)
    _register_backups(registry)
    if configuration.uses_containers:
        _register_containers(registry, configuration)
    else:
        _register_applications(registry, configuration)
    _register_records(registry)
    logger.debug("Registered %d step(s) for %s", len(registry), configuration.distro_family)
    return registry


# ── Base system ─────────────────────────────────────────────────


def _register_base(registry: StepRegistry) -> None:
    registry.register(Step(
        id="system_update",
        label="Update package index and upgrade the system",
        forward=_system_update,
        uses_package_manager=True,
    ))
    registry.register(packages_step(
        "essential_packages", "Install essential packages", ESSENTIAL_PACKAGES,
        requires=["system_update"],
    ))
    registry.register(Step(
        id="firewall",
        label="Configure the firewall",
        forward=_firewall_forward,
        inverse=_firewall_inverse,
        requires=frozenset({"essential_packages"}),
    ))
    registry.register(config_file_step(
        "ssh_hardening", "Harden the SSH daemon", "/etc/ssh/sshd_config",
        templates.sshd_config, requires=["firewall"], restart="ssh",
    ))


def _system_update(ctx: StepContext) -> UndoToken:
    # Upgrades cannot be taken back; the inverse leaves them in place
    ctx.execute("update_index")
    ctx.execute("upgrade_system")
    return {}


def _firewall_forward(ctx: StepContext) -> UndoToken:
    unit = ctx.provider.service_name("firewall", ctx.family)
    was_active = ctx.succeeds("service_active", service=unit)
    rules = [SSH_FIREWALL_RULE[ctx.family], *ctx.configuration.firewall_rules]
    allowed: list[str] = []

    with compensating(ctx) as undo:
        # firewalld only accepts rules while running; ufw must get the SSH
        # rule before it is switched on
        if was_active:
            undo.push("reload the firewall", partial(ctx.execute, "firewall_reload"))
        elif ctx.family != "apt":
            ctx.execute("firewall_enable")
            undo.push("disable the firewall", partial(ctx.execute, "firewall_disable"))
        for rule in rules:
            ctx.execute("firewall_allow", rule=rule)
            allowed.append(rule)
            undo.push(f"revoke {rule}", partial(ctx.execute, "firewall_revoke", rule=rule))
        if ctx.family == "apt" and not was_active:
            ctx.execute("firewall_enable")
            undo.push("disable the firewall", partial(ctx.execute, "firewall_disable"))
        ctx.execute("firewall_reload")
    return {"rules": allowed, "enabled": not was_active}


def _firewall_inverse(ctx: StepContext, token: UndoToken) -> None:
    for rule in reversed(token.get("rules", [])):
        ctx.execute("firewall_revoke", rule=rule)
    if token.get("enabled"):
        ctx.execute("firewall_disable")
    else:
        ctx.execute("firewall_reload")


# ── Security ────────────────────────────────────────────────────


def _register_security(registry: StepRegistry, configuration: Configuration) -> None:
    registry.register(packages_step(
        "fail2ban_package", "Install fail2ban", ["fail2ban"], requires=["system_update"],
    ))
    registry.register(config_file_step(
        "fail2ban_config", "Configure the fail2ban SSH jail", "/etc/fail2ban/jail.local",
        templates.fail2ban_jail, requires=["fail2ban_package"],
    ))
    registry.register(service_step(
        "fail2ban_service", "Enable fail2ban", "fail2ban", requires=["fail2ban_config"],
    ))

    if configuration.security_level in ("intermediate", "advanced"):
        registry.register(packages_step(
            "access_control_packages", "Install mandatory access control tooling",
            ["access_control", "access_control_utils"], requires=["system_update"],
        ))
        if configuration.distro_family == "apt":
            registry.register(service_step(
                "access_control", "Enable AppArmor", "apparmor",
                requires=["access_control_packages"],
            ))
        else:
            registry.register(config_file_step(
                "access_control", "Set SELinux to enforcing", "/etc/selinux/config",
                templates.selinux_config, requires=["access_control_packages"],
            ))

    if configuration.security_level == "advanced":
        registry.register(packages_step(
            "rootkit_detection", "Install rootkit detection", ["rkhunter", "chkrootkit"],
            requires=["system_update"],
        ))
        registry.register(config_file_step(
            "security_scan_script", "Install the security scan script",
            "/usr/local/bin/security_scan.sh", templates.SECURITY_SCAN_SCRIPT,
            requires=["rootkit_detection"], mode=0o755,
        ))
        registry.register(config_file_step(
            "security_scan_schedule", "Schedule weekly security scans",
            "/etc/cron.d/security_scan", templates.SECURITY_SCAN_CRON,
            requires=["security_scan_script"],
        ))


# ── Automatic updates ───────────────────────────────────────────


def _auto_updates_path(ctx: StepContext) -> str:
    return ctx.provider.config_path("auto_updates", ctx.family)


def _register_updates(registry: StepRegistry, configuration: Configuration) -> None:
    registry.register(packages_step(
        "automatic_updates_package", "Install the automatic update agent", ["auto_updates"],
        requires=["system_update"],
    ))
    registry.register(config_file_step(
        "automatic_updates_config", "Configure automatic updates", _auto_updates_path,
        templates.auto_updates_config, requires=["automatic_updates_package"],
    ))
    service_after = "automatic_updates_config"
    if configuration.distro_family == "dnf":
        registry.register(config_file_step(
            "automatic_updates_schedule", "Schedule dnf-automatic",
            CONFIG_PATHS["auto_updates_timer"]["dnf"], templates.dnf_automatic_timer,
            requires=["automatic_updates_config"], reload_systemd=True,
        ))
        service_after = "automatic_updates_schedule"
    registry.register(service_step(
        "automatic_updates", "Enable automatic updates", "auto_updates",
        requires=[service_after],
    ))


# ── Monitoring ──────────────────────────────────────────────────


def _register_monitoring(registry: StepRegistry) -> None:
    registry.register(packages_step(
        "monitoring_packages", "Install Prometheus, node exporter and Grafana",
        MONITORING_PACKAGES, requires=["system_update"],
    ))
    registry.register(config_file_step(
        "prometheus_config", "Configure Prometheus scraping", "/etc/prometheus/prometheus.yml",
        templates.prometheus_config, requires=["monitoring_packages"], restart="prometheus",
    ))
    for service, after in (
        ("prometheus", "prometheus_config"),
        ("node_exporter", "monitoring_packages"),
        ("grafana", "monitoring_packages"),
    ):
        registry.register(service_step(
            f"monitoring_{service}", f"Enable {service}", service, requires=[after],
        ))


# ── Backups ─────────────────────────────────────────────────────


def _register_backups(registry: StepRegistry) -> None:
    registry.register(packages_step(
        "backup_packages", "Install restic", ["restic"], requires=["system_update"],
    ))
    registry.register(secret_file_step(
        "backup_password", "Generate the backup repository password",
        templates.BACKUP_PASSWORD_FILE, requires=["backup_packages"],
    ))
    registry.register(config_file_step(
        "backup_script", "Install the backup script", "/usr/local/bin/run-backup.sh",
        templates.backup_script, requires=["backup_password"], mode=0o755,
    ))
    registry.register(config_file_step(
        "backup_schedule", "Schedule backups", "/etc/cron.d/restic-backup",
        templates.backup_cron, requires=["backup_script"],
    ))


# ── Containers ──────────────────────────────────────────────────


def _register_containers(registry: StepRegistry, configuration: Configuration) -> None:
    registry.register(packages_step(
        "docker_packages", "Install Docker", ["docker"], requires=["system_update"],
    ))
    registry.register(service_step(
        "docker_service", "Enable Docker", "docker", requires=["docker_packages"],
    ))
    registry.register(config_file_step(
        "docker_config", "Configure the Docker daemon", "/etc/docker/daemon.json",
        templates.docker_daemon_config, requires=["docker_service"], restart="docker",
    ))

    runtime_ready = "docker_config"
    if configuration.containerization == "kubernetes":
        registry.register(packages_step(
            "kubernetes_packages", "Install kubectl", ["kubectl"], requires=["docker_config"],
        ))
        runtime_ready = "kubernetes_packages"

    for index, app in enumerate(configuration.applications):
        registry.register(container_step(
            app, configuration.containerization, host_port=80 if index == 0 else 8080 + index,
            requires=[runtime_ready],
        ))


def container_step(app: str, runtime: str, host_port: int = 80, requires=()) -> Step:
    """Deploy ``app`` as a Docker container or a Kubernetes deployment."""

    def forward(ctx: StepContext) -> UndoToken:
        if runtime == "kubernetes":
            manifest = f"{K8S_MANIFEST_DIR}/{app}-deployment.yaml"
            with compensating(ctx) as undo:
                ctx.filesystem.write(manifest, templates.kubernetes_deployment(app))
                undo.push(f"remove {manifest}", partial(ctx.filesystem.remove, manifest))
                ctx.run(Command("kubectl", ("apply", "-f", str(ctx.filesystem.resolve(manifest)))))
            return {"runtime": runtime, "manifest": manifest}

        ctx.run(Command("docker", ("pull", app)))
        with compensating(ctx) as undo:
            # A failed `docker run` can still leave a created container
            undo.push(f"remove container {app}", partial(_remove_container, ctx, app))
            ctx.run(Command("docker", ("run", "-d", "--name", app, "-p", f"{host_port}:80", app)))
        return {"runtime": runtime, "name": app}

    def inverse(ctx: StepContext, token: UndoToken) -> None:
        if token["runtime"] == "kubernetes":
            manifest = token["manifest"]
            ctx.run(Command("kubectl", ("delete", "-f", str(ctx.filesystem.resolve(manifest)))))
            ctx.filesystem.remove(manifest)
        else:
            ctx.run(Command("docker", ("rm", "-f", token["name"])))

    return Step(
        id=f"container:{app}",
        label=f"Deploy {app} ({runtime})",
        forward=forward,
        inverse=inverse,
        requires=frozenset(requires),
    )


def _remove_container(ctx: StepContext, name: str) -> None:
    if ctx.run(Command("docker", ("container", "inspect", name)), check=False).ok:
        ctx.run(Command("docker", ("rm", "-f", name)))


# ── Applications ────────────────────────────────────────────────

# Default site served by each web server: (config path key, content)
DEFAULT_SITES = {
    "nginx": ("nginx_site", templates.NGINX_DEFAULT_SITE),
    "apache": ("apache_site", templates.apache_default_site),
}

DATABASE_PASSWORD_FILES = {
    "mysql": "/root/.mysql_root_password",
    "postgresql": "/root/.postgres_password",
}


def _register_applications(registry: StepRegistry, configuration: Configuration) -> None:
    family = configuration.distro_family
    for app in configuration.applications:
        name = app.lower()
        recipe = APPLICATION_RECIPES.get(name)
        if recipe is None:
            raise ConfigurationError(
                f"Unknown application {app!r} (known: {', '.join(sorted(APPLICATION_RECIPES))})"
            )
        packages = list(recipe["packages"][family])
        if configuration.server_role == "web":
            packages += recipe.get("web_extras", {}).get(family, [])

        registry.register(packages_step(
            f"app:{app}", f"Install {app}", packages, requires=["essential_packages"],
        ))
        service = recipe.get("service", {}).get(family)
        if not service:
            continue
        registry.register(service_step(
            f"app:{app}:service", f"Enable {service}", service, requires=[f"app:{app}"],
        ))

        if name in DEFAULT_SITES and configuration.server_role == "web":
            path_key, content = DEFAULT_SITES[name]
            registry.register(config_file_step(
                f"app:{app}:site", f"Configure the {app} default site",
                CONFIG_PATHS[path_key][family], content,
                requires=[f"app:{app}:service"], restart=service,
            ))
        if name in DATABASE_PASSWORD_FILES:
            registry.register(database_credentials_step(
                app, DATABASE_PASSWORD_FILES[name], requires=[f"app:{app}:service"],
            ))


def database_credentials_step(app: str, password_file: str, requires=()) -> Step:
    """Set a generated administrator password on a fresh MySQL or PostgreSQL.

    The password is written to ``password_file`` (0600) and handed to the
    client through ``$(cat ...)``, so it never shows up in a command line
    that lands in the transcript. An existing password file means the
    server was already secured and the step changes nothing.

    For MySQL the forward action also drops anonymous accounts; undo
    cannot bring those back.
    """
    kind = app.lower()

    def forward(ctx: StepContext) -> UndoToken:
        if ctx.filesystem.read(password_file) is not None:
            ctx.transcript.append(f"kept existing {password_file}")
            return {"path": password_file, "created": False}
        with compensating(ctx) as undo:
            ctx.filesystem.write(password_file, generate_secret() + "\n", mode=SECRET_MODE)
            undo.push(f"remove {password_file}", partial(ctx.filesystem.remove, password_file))
            ctx.run(_set_password_command(ctx, kind, password_file))
        return {"path": password_file, "created": True}

    def inverse(ctx: StepContext, token: UndoToken) -> None:
        if not token.get("created"):
            return
        ctx.run(_reset_password_command(ctx, kind, token["path"]))
        ctx.filesystem.remove(token["path"])
        ctx.transcript.append(f"removed {token['path']}")

    return Step(
        id=f"app:{app}:credentials",
        label=f"Set the {app} administrator password",
        forward=forward,
        inverse=inverse,
        requires=frozenset(requires),
    )


def _set_password_command(ctx: StepContext, kind: str, password_file: str) -> Command:
    secret = f"$(cat {ctx.filesystem.resolve(password_file)})"
    if kind == "mysql":
        sql = (
            f"ALTER USER 'root'@'localhost' IDENTIFIED BY '{secret}'; "
            "DELETE FROM mysql.user WHERE User=''; FLUSH PRIVILEGES;"
        )
        return Command("sh", ("-c", f'mysql -u root -e "{sql}"'))
    sql = f"ALTER USER postgres PASSWORD '{secret}';"
    return Command("sh", ("-c", f'sudo -u postgres psql -c "{sql}"'))


def _reset_password_command(ctx: StepContext, kind: str, password_file: str) -> Command:
    if kind == "postgresql":
        return Command("sudo", ("-u", "postgres", "psql", "-c", "ALTER USER postgres PASSWORD NULL;"))
    # Debian packages authenticate root over the local socket; the RPM
    # builds ship an empty root password
    if ctx.family == "apt":
        sql = "ALTER USER 'root'@'localhost' IDENTIFIED WITH auth_socket; FLUSH PRIVILEGES;"
    else:
        sql = "ALTER USER 'root'@'localhost' IDENTIFIED BY ''; FLUSH PRIVILEGES;"
    secret = f"$(cat {ctx.filesystem.resolve(password_file)})"
    return Command("sh", ("-c", f'MYSQL_PWD="{secret}" mysql -u root -e "{sql}"'))


# ── Setup record ────────────────────────────────────────────────


def _register_records(registry: StepRegistry) -> None:
    registry.register(config_file_step(
        "saved_configuration", "Save the provisioning configuration",
        SAVED_CONFIG_PATH, templates.saved_configuration,
    ))
    # The report lists every step, so it goes last
    earlier = registry.list_steps()
    registry.register(config_file_step(
        "setup_report", "Write the setup report", REPORT_PATH,
        templates.setup_report([(step_id, registry.get(step_id).label) for step_id in earlier]),
        requires=earlier, mode=0o600,
    ))
