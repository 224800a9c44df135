"""
One-shot execution of untrusted Python code.

Each call gets its own empty temp directory, runs ``<python> -`` there with the
code on stdin (wrapped with bubblewrap when the probe says it works), snapshots
whatever the code left behind into ``<bucket>/executions/<execution_id>``,
optionally uploads it, and removes the directory again.

A crashing script is not an error here: its exit code and stderr are returned
as data. Only bad requests and isolation setup failures raise.
"""

import logging
import shlex
import shutil
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .availability import SandboxAvailabilityProbe
from .config import SandboxServiceConfig
from .file_utils import (
    UploadConfig,
    UploadResult,
    cache_to_local_bucket,
    resolve_bucket_file,
    upload_files,
)
from .isolation import BubblewrapIsolation
from .process import run_shell
from .schemas import ExecuteRequest, parse_request

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    execution_id: str
    exit_code: Optional[int]
    signal: Optional[str]
    stdout: str
    stderr: str
    uploads: List[UploadResult] = field(default_factory=list)
    timed_out: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "executionId": self.execution_id,
            "exitCode": self.exit_code,
            "signal": self.signal,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "uploads": [u.to_dict() for u in self.uploads],
        }


class ExecutionService:
    """Runs ad-hoc code in throwaway working directories."""

    def __init__(
        self,
        config: SandboxServiceConfig,
        isolation: BubblewrapIsolation,
        probe: SandboxAvailabilityProbe,
    ):
        self.config = config
        self.isolation = isolation
        self.probe = probe
        self.bucket_dir = Path(config.storage.bucket_dir)

    async def execute(
        self,
        code: str,
        timeout_ms: Optional[int] = None,
        upload_config: Optional[UploadConfig] = None,
    ) -> ExecutionResult:
        upload_config = upload_config or UploadConfig()
        request = parse_request(ExecuteRequest, {
            "code": code,
            "timeoutMs": timeout_ms,
            "fileUploadUrl": upload_config.file_upload_url,
            "uploadToken": upload_config.upload_token,
            "public": upload_config.is_public,
        }).unwrap()
        return await self.execute_request(request)

    async def execute_request(self, request: ExecuteRequest) -> ExecutionResult:
        self.isolation.initialize(self.config.isolation)

        execution_id = str(uuid.uuid4())
        work_dir = tempfile.mkdtemp(prefix="py-exec-", dir=self.config.storage.work_root)
        try:
            python_cmd = f"{shlex.quote(self.config.python_path)} -"
            use_sandbox = self.probe.is_available()
            command = (
                self.isolation.wrap_with_sandbox(python_cmd, cwd=work_dir)
                if use_sandbox else python_cmd
            )

            timeout = request.timeoutMs / 1000.0 if request.timeoutMs else None
            outcome = await run_shell(command, cwd=work_dir, stdin_data=request.code, timeout=timeout)
            if outcome.timed_out:
                logger.info("Execution %s killed after %sms", execution_id, request.timeoutMs)

            stderr = self.isolation.annotate_stderr_with_sandbox_failures(python_cmd, outcome.stderr)
            if not use_sandbox:
                stderr += self.probe.unavailable_note()

            # Snapshot even failed runs so partial artifacts stay inspectable.
            cache_to_local_bucket(work_dir, self.bucket_dir / "executions" / execution_id)

            uploads: List[UploadResult] = []
            upload_config = request.upload_config()
            if upload_config.enabled:
                uploads = await upload_files(work_dir, upload_config)

            return ExecutionResult(
                execution_id=execution_id,
                exit_code=outcome.exit_code,
                signal=outcome.signal,
                stdout=outcome.stdout,
                stderr=stderr,
                uploads=uploads,
                timed_out=outcome.timed_out,
            )
        finally:
            try:
                shutil.rmtree(work_dir)
            except OSError as e:
                logger.debug("Failed to remove %s: %s", work_dir, e)

    def get_file(self, execution_id: str, filename: str) -> Path:
        return resolve_bucket_file(self.bucket_dir, "executions", execution_id, filename)
