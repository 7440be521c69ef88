"""Adapters — bindings to the machine being provisioned.

Public re-exports for convenient access.
"""

from server_forge.adapters.base import ActionInvoker, InvocationResult
from server_forge.adapters.filesystem import LocalFilesystem
from server_forge.adapters.mock import MockInvoker
from server_forge.adapters.shell import SubprocessInvoker

__all__ = [
    "ActionInvoker",
    "InvocationResult",
    "LocalFilesystem",
    "MockInvoker",
    "SubprocessInvoker",
]
