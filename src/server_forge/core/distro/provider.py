"""
DistroProvider — canonical actions to distribution-specific commands.

One capability class per package-manager family, each honouring the
same ``resolve`` contract, so steps never branch on the distribution
themselves. Resolution is pure: the provider builds commands, the
action invoker runs them.

    >>> str(DistroProvider().resolve("install_package:nginx", "apt"))
    'apt-get install -y nginx'

Detecting which family a machine uses is not done here; the provider
only consumes a family that has already been identified.
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from string import Formatter
from typing import Any, ClassVar

from server_forge.core.data.distro_commands import (
    CONFIG_PATHS,
    FAMILY_COMMANDS,
    PACKAGE_ALIASES,
    POSITIONAL_PARAM,
    SERVICE_ALIASES,
    SYSTEMD_COMMANDS,
)
from server_forge.core.errors import UnsupportedActionError, UnsupportedDistroError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Command:
    """A resolved, literal invocation."""

    program: str
    args: tuple[str, ...] = ()

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]

    def __str__(self) -> str:
        return shlex.join(self.argv)


class DistroCapability:
    """Command templates for one package-manager family."""

    family: ClassVar[str] = ""

    def __init__(self) -> None:
        self._templates: dict[str, list[str]] = {
            **SYSTEMD_COMMANDS,
            **FAMILY_COMMANDS[self.family],
        }

    @property
    def actions(self) -> list[str]:
        return sorted(self._templates)

    def supports(self, action: str) -> bool:
        return action in self._templates

    def resolve(self, action: str, params: dict[str, Any]) -> Command:
        template = self._templates.get(action)
        if template is None:
            raise UnsupportedActionError(action, self.family)

        params = self.prepare_params(action, dict(params))
        rendered: list[str] = []
        for part in template:
            fields = [f for _, f, _, _ in Formatter().parse(part) if f]
            missing = [f for f in fields if f not in params]
            if missing:
                raise UnsupportedActionError(
                    action, self.family, f"missing parameter(s): {', '.join(missing)}"
                )
            rendered.append(part.format(**params))
        return Command(program=rendered[0], args=tuple(rendered[1:]))

    def prepare_params(self, action: str, params: dict[str, Any]) -> dict[str, Any]:
        """Hook for families that derive extra template parameters."""
        return params

    def alias(self, table: dict[str, dict[str, str]], canonical: str) -> str:
        return table.get(canonical, {}).get(self.family, canonical)


class AptCapability(DistroCapability):
    """Debian / Ubuntu (apt, ufw)."""

    family = "apt"


class _FirewalldCapability(DistroCapability):
    """RHEL-style families that manage the firewall through firewalld."""

    def prepare_params(self, action: str, params: dict[str, Any]) -> dict[str, Any]:
        if action in ("firewall_allow", "firewall_revoke") and "rule" in params:
            rule = str(params["rule"])
            verb = "add" if action == "firewall_allow" else "remove"
            # "80/tcp" or "8080" is a port, anything else a service name
            kind = "port" if rule[:1].isdigit() else "service"
            if kind == "port" and "/" not in rule:
                rule = f"{rule}/tcp"
            params["rule_flag"] = f"--{verb}-{kind}={rule}"
        return params


class YumCapability(_FirewalldCapability):
    """RHEL / CentOS (yum, firewalld)."""

    family = "yum"


class DnfCapability(_FirewalldCapability):
    """Fedora (dnf, firewalld)."""

    family = "dnf"


_CAPABILITIES: dict[str, type[DistroCapability]] = {
    cls.family: cls for cls in (AptCapability, YumCapability, DnfCapability)
}

SUPPORTED_FAMILIES: tuple[str, ...] = tuple(_CAPABILITIES)


class DistroProvider:
    """Resolve canonical actions for any supported family.

    Capabilities are instantiated once and never change afterwards.
    """

    def __init__(self) -> None:
        self._capabilities = {family: cls() for family, cls in _CAPABILITIES.items()}

    def capability(self, family: str) -> DistroCapability:
        cap = self._capabilities.get(family)
        if cap is None:
            raise UnsupportedDistroError(family)
        return cap

    def resolve(self, action: str, family: str, **params: Any) -> Command:
        """Resolve ``action`` (optionally ``name:arg``) for ``family``.

        Raises:
            UnsupportedDistroError: ``family`` is not apt, yum or dnf.
            UnsupportedActionError: No mapping for the action, or a
                required template parameter is missing.
        """
        cap = self.capability(family)
        name, sep, positional = action.partition(":")
        if sep:
            key = POSITIONAL_PARAM.get(name)
            if key is None:
                raise UnsupportedActionError(action, family, "action takes no positional argument")
            params.setdefault(key, positional)
        command = cap.resolve(name, params)
        logger.debug("Resolved %s for %s → %s", action, family, command)
        return command

    def package_name(self, canonical: str, family: str) -> str:
        return self.capability(family).alias(PACKAGE_ALIASES, canonical)

    def service_name(self, canonical: str, family: str) -> str:
        return self.capability(family).alias(SERVICE_ALIASES, canonical)

    def config_path(self, canonical: str, family: str) -> str:
        path = self.capability(family).alias(CONFIG_PATHS, canonical)
        if path == canonical:
            raise UnsupportedActionError(f"config:{canonical}", family, "no known path")
        return path
