"""Step catalog — builders, file templates and the configuration-driven registry."""

from server_forge.core.steps.builders import (
    compensating,
    config_file_step,
    packages_step,
    secret_file_step,
    service_step,
)
from server_forge.core.steps.catalog import build_registry, container_step, database_credentials_step

__all__ = [
    "build_registry",
    "compensating",
    "config_file_step",
    "container_step",
    "database_credentials_step",
    "packages_step",
    "secret_file_step",
    "service_step",
]
