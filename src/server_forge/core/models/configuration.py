"""
Configuration — the validated, immutable snapshot of user choices.

The engine never collects input itself. Whatever front end gathers the
choices (YAML file, flags, a wizard) hands over a Configuration, and
from then on it is passed by value into every planning and execution
call. There is no ambient "current configuration".
"""

from __future__ import annotations

import hashlib
import json
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DistroFamily = Literal["apt", "yum", "dnf"]

# Distribution names accepted as shorthand for a package-manager family
DISTRO_ALIASES: dict[str, str] = {
    "ubuntu": "apt",
    "debian": "apt",
    "centos": "yum",
    "rhel": "yum",
    "fedora": "dnf",
}


class Configuration(BaseModel):
    """User choices for one provisioning run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    distro_family: DistroFamily
    server_role: Literal["web", "database", "application"] = "web"
    security_level: Literal["basic", "intermediate", "advanced"] = "basic"
    monitoring: bool = False
    backup_frequency: Literal["hourly", "daily", "weekly"] = "daily"
    update_schedule: Literal["daily", "weekly", "monthly"] = "weekly"
    containerization: Literal["none", "docker", "kubernetes"] = "none"
    applications: tuple[str, ...] = Field(default_factory=tuple)
    firewall_rules: tuple[str, ...] = Field(default_factory=tuple)

    @field_validator("distro_family", mode="before")
    @classmethod
    def _normalize_family(cls, value: object) -> object:
        if isinstance(value, str):
            key = value.strip().lower()
            return DISTRO_ALIASES.get(key, key)
        return value

    @field_validator("applications", "firewall_rules", mode="before")
    @classmethod
    def _strip_entries(cls, value: object) -> object:
        if isinstance(value, (list, tuple)):
            return tuple(str(v).strip() for v in value if str(v).strip())
        return value

    @model_validator(mode="before")
    @classmethod
    def _legacy_container_flags(cls, data: object) -> object:
        # use_containers / use_kubernetes booleans → containerization mode
        if not isinstance(data, dict):
            return data
        if "use_containers" not in data and "use_kubernetes" not in data:
            return data
        data = dict(data)
        use_containers = bool(data.pop("use_containers", False))
        use_kubernetes = bool(data.pop("use_kubernetes", False))
        if "containerization" not in data:
            if use_containers and use_kubernetes:
                data["containerization"] = "kubernetes"
            elif use_containers:
                data["containerization"] = "docker"
            else:
                data["containerization"] = "none"
        return data

    @property
    def uses_containers(self) -> bool:
        return self.containerization != "none"

    def config_hash(self) -> str:
        """Stable SHA-256 over the canonical JSON form."""
        canonical = json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
