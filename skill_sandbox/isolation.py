"""
Bubblewrap isolation wrapper.

Turns a shell command into one that runs inside a bubblewrap sandbox where:
- the host filesystem is visible read-only
- /tmp is a private tmpfs and only the run's working directory is writable
- user/PID/UTS/IPC namespaces are isolated
- the network namespace is unshared when no domains are allowed

Bubblewrap can be installed but unusable (e.g. Docker without extra capabilities),
so callers should consult ``SandboxAvailabilityProbe`` before relying on it.
"""

import logging
import os
import shlex
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .config import IsolationConfig
from .errors import SetupError

logger = logging.getLogger(__name__)

# (lowercased stderr signature, hint appended to stderr)
_FAILURE_HINTS = [
    (
        ("no permissions to create new namespace", "creating new namespace failed", "setting up uid map"),
        "[Sandbox] bubblewrap could not create namespaces; unprivileged user namespaces "
        "are probably disabled on this host.",
    ),
    (
        ("bwrap: not found", "bwrap: command not found", "no such file or directory: 'bwrap'"),
        "[Sandbox] bubblewrap (bwrap) is not installed on this host.",
    ),
    (
        ("read-only file system",),
        "[Sandbox] Write blocked: only the working directory is writable inside the sandbox.",
    ),
]

_NETWORK_SIGNATURES = (
    "network is unreachable",
    "temporary failure in name resolution",
    "name or service not known",
)
_NETWORK_HINT = "[Sandbox] Network access is disabled for sandboxed code."


class BubblewrapIsolation:
    """Wraps commands with bubblewrap according to an ``IsolationConfig``."""

    def __init__(self) -> None:
        self._config: Optional[IsolationConfig] = None

    @property
    def config(self) -> Optional[IsolationConfig]:
        return self._config

    def initialize(self, config: Union[IsolationConfig, Dict[str, Any]]) -> None:
        """Validate and install the isolation config. Safe to call repeatedly."""
        if self._config is not None:
            return

        try:
            cfg = config if isinstance(config, IsolationConfig) else IsolationConfig(**config)
        except (PydanticValidationError, TypeError) as e:
            raise SetupError(f"Invalid isolation config: {e}") from e

        fs = cfg.filesystem
        for path in (*fs.deny_read, *fs.allow_write, *fs.deny_write):
            if not os.path.isabs(path):
                raise SetupError(f"Isolation filesystem paths must be absolute: {path!r}")

        domains = cfg.network.allowed_domains
        if domains and "*" not in domains:
            logger.warning(
                "Domain allowlist %s cannot be enforced by bubblewrap; network stays shared",
                domains,
            )

        self._config = cfg

    def is_sandboxing_enabled(self) -> bool:
        return self._config is not None

    def network_isolated(self) -> bool:
        return self._config is not None and not self._config.network.allowed_domains

    def build_argv(self, command: str, cwd: Optional[str] = None) -> List[str]:
        """Build the bubblewrap argv for *command*."""
        if self._config is None:
            raise SetupError("Isolation backend is not initialized")
        cfg = self._config

        bwrap_args = [
            cfg.bwrap_path,
            # Namespace isolation
            "--unshare-user",
            "--unshare-pid",
            "--unshare-uts",
            "--unshare-ipc",
            "--die-with-parent",
            # Host filesystem visible but read-only
            "--ro-bind", "/", "/",
            "--proc", "/proc",
            "--dev", "/dev",
            "--tmpfs", "/tmp",
        ]

        for path in cfg.filesystem.deny_read:
            if Path(path).is_dir():
                bwrap_args.extend(["--tmpfs", path])
            elif Path(path).exists():
                bwrap_args.extend(["--ro-bind", "/dev/null", path])

        for path in cfg.filesystem.allow_write:
            bwrap_args.extend(["--bind-try", path, path])

        for path in cfg.filesystem.deny_write:
            bwrap_args.extend(["--ro-bind-try", path, path])

        # The run's own directory is the one place code may write.
        if cwd is not None:
            work_dir = str(Path(cwd).resolve())
            bwrap_args.extend(["--bind", work_dir, work_dir, "--chdir", work_dir])

        if not cfg.network.allowed_domains:
            bwrap_args.append("--unshare-net")

        bwrap_args.extend(["/bin/sh", "-c", command])
        return bwrap_args

    def wrap_with_sandbox(self, command: str, cwd: Optional[str] = None) -> str:
        """Return *command* rewritten to run under bubblewrap, as a shell string."""
        return shlex.join(self.build_argv(command, cwd=cwd))

    def annotate_stderr_with_sandbox_failures(self, command: str, stderr: str) -> str:
        """Append hints for sandbox-caused failures recognised in *stderr*."""
        if not stderr:
            return stderr

        lowered = stderr.lower()
        hints = [
            hint for signatures, hint in _FAILURE_HINTS
            if any(sig in lowered for sig in signatures)
        ]
        if self.network_isolated() and any(sig in lowered for sig in _NETWORK_SIGNATURES):
            hints.append(_NETWORK_HINT)

        if not hints:
            return stderr
        logger.debug("Sandbox failure signatures in stderr of %r: %s", command[:80], hints)
        return stderr.rstrip("\n") + "\n" + "\n".join(hints) + "\n"
