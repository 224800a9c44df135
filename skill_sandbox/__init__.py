"""
skill-sandbox

Runs untrusted Python inside a bubblewrap sandbox, either as one-shot executions
or as persistent file-backed deployments invoked with JSON input.

- execution: one-shot runs in a throwaway working directory
- deployments: registry of deployed skills and their invocations
- isolation / availability: bubblewrap wrapping and the cached availability probe
- server: aiohttp application exposing both over HTTP
"""

from .config import SandboxServiceConfig
from .deployments import DeploymentManager, DeploymentStore
from .errors import (
    ManifestError,
    NotFoundError,
    ProcessError,
    RequestValidationError,
    SandboxError,
    SetupError,
)
from .execution import ExecutionService

__all__ = [
    "SandboxServiceConfig",
    "DeploymentManager",
    "DeploymentStore",
    "ExecutionService",
    "SandboxError",
    "RequestValidationError",
    "SetupError",
    "ManifestError",
    "ProcessError",
    "NotFoundError",
]
