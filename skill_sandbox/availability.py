"""One-time check that bubblewrap sandboxing actually works on this host."""

import logging
import subprocess
from typing import Optional

from .config import IsolationConfig
from .isolation import BubblewrapIsolation

logger = logging.getLogger(__name__)


class SandboxAvailabilityProbe:
    """
    Runs a trivially-succeeding command under the sandbox once and remembers the outcome.

    Some environments have bwrap installed but can't create the required namespaces,
    so a real probe is the only reliable signal. The result is cached for the
    lifetime of the probe; the service falls back to unsandboxed execution and
    reports ``reason`` in every stderr while it is unavailable.
    """

    def __init__(self, isolation: BubblewrapIsolation, config: IsolationConfig):
        self._isolation = isolation
        self._config = config
        self._available: Optional[bool] = None
        self._reason: Optional[str] = None

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def is_available(self) -> bool:
        if self._available is not None:
            return self._available

        try:
            if not self._isolation.is_sandboxing_enabled():
                self._isolation.initialize(self._config)
            wrapped = self._isolation.wrap_with_sandbox("true")
            result = subprocess.run(
                wrapped,
                shell=True,
                capture_output=True,
                text=True,
                timeout=self._config.probe_timeout_s,
            )
            self._available = result.returncode == 0
            if not self._available:
                self._reason = result.stderr or result.stdout or "unknown error"
        except Exception as e:
            self._available = False
            self._reason = str(e)

        if self._available:
            logger.info("Sandbox probe succeeded; runs will be wrapped with bubblewrap")
        else:
            logger.warning("Sandbox unavailable, running unsandboxed: %s", (self._reason or "").strip())
        return self._available

    def unavailable_note(self) -> str:
        note = "\n[Note] Sandbox disabled due to environment limitations"
        if self._reason:
            note += f": {self._reason.strip()}"
        return note
