from server_forge.core.distro.provider import (
    SUPPORTED_FAMILIES,
    AptCapability,
    Command,
    DistroCapability,
    DistroProvider,
    DnfCapability,
    YumCapability,
)

__all__ = [
    "SUPPORTED_FAMILIES",
    "AptCapability",
    "Command",
    "DistroCapability",
    "DistroProvider",
    "DnfCapability",
    "YumCapability",
]
