"""Error kinds raised by the execution and deployment services."""

from typing import Any, Dict, List, Optional


class SandboxError(Exception):
    """Base class for every error the sandbox services raise on purpose."""

    status = 500


class RequestValidationError(SandboxError):
    """A request did not match its schema. Raised before any process is spawned."""

    status = 400

    def __init__(self, message: str, details: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.details = details or []


class SetupError(SandboxError):
    """The isolation backend, a manifest fetch or a file download failed."""


class ManifestError(SetupError):
    """The deployment manifest is malformed (missing entry, unsafe paths)."""


class ProcessError(SandboxError):
    """An invoked entrypoint exited non-zero."""

    def __init__(self, exit_code: Optional[int], stderr: str, signal: Optional[str] = None):
        if exit_code is None and signal:
            message = f"Process killed by {signal}: {stderr}"
        else:
            message = f"Process exited with code {exit_code}: {stderr}"
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr
        self.signal = signal


class NotFoundError(SandboxError):
    """Unknown sandbox id or missing cached file."""

    status = 404
