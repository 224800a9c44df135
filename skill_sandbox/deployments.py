"""
Persistent, file-backed deployments.

A deployment is a directory of files plus an entrypoint. Nothing keeps running
between calls: every ``invoke`` spawns a fresh ``<python> -u <entry>`` in the
deployment's directory, feeds the JSON input on stdin and returns stdout. The
directory is what persists, so successive invokes see each other's files.

The registry lives in memory only; restarting the process forgets every deployment.
There is no per-deployment lock: concurrent invokes on one sandbox
run side by side and can race on files in its directory.
"""

import asyncio
import json
import logging
import os
import shlex
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import aiohttp
from pydantic import ValidationError as PydanticValidationError

from .availability import SandboxAvailabilityProbe
from .config import SandboxServiceConfig
from .errors import ManifestError, NotFoundError, ProcessError, RequestValidationError, SetupError
from .file_utils import (
    UploadConfig,
    UploadResult,
    cache_to_local_bucket,
    download_file,
    resolve_bucket_file,
    resolve_inside,
    upload_files,
    walk,
)
from .isolation import BubblewrapIsolation
from .process import run_shell
from .schemas import FileChange, ProjectManifest

logger = logging.getLogger(__name__)


@dataclass
class Deployment:
    sandbox_id: str
    work_dir: str
    entry: str
    meta_url: str
    namespace: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sandboxId": self.sandbox_id,
            "entry": self.entry,
            "metaUrl": self.meta_url,
            "namespace": self.namespace,
            "workDir": self.work_dir,
        }


@dataclass
class DeployResult:
    sandbox_id: str
    message: str = "Project deployed successfully"


@dataclass
class InvokeResult:
    execution_id: str
    result: str
    uploads: List[UploadResult]


class DeploymentStore:
    """In-memory deployment registry. Mutations are serialized by an asyncio lock."""

    def __init__(self) -> None:
        self._deployments: Dict[str, Deployment] = {}
        self._lock = asyncio.Lock()

    async def add(self, deployment: Deployment) -> None:
        async with self._lock:
            self._deployments[deployment.sandbox_id] = deployment

    async def remove(self, sandbox_id: str) -> Optional[Deployment]:
        async with self._lock:
            return self._deployments.pop(sandbox_id, None)

    def get(self, sandbox_id: str) -> Optional[Deployment]:
        return self._deployments.get(sandbox_id)

    def values(self) -> List[Deployment]:
        return list(self._deployments.values())

    def __len__(self) -> int:
        return len(self._deployments)


class DeploymentManager:
    """Deploys, patches, invokes and deletes file-backed skills."""

    def __init__(
        self,
        config: SandboxServiceConfig,
        isolation: BubblewrapIsolation,
        probe: SandboxAvailabilityProbe,
        store: Optional[DeploymentStore] = None,
        timeout: Optional[float] = None,
    ):
        self.config = config
        self.isolation = isolation
        self.probe = probe
        self.store = store if store is not None else DeploymentStore()
        self.bucket_dir = Path(config.storage.bucket_dir)
        self.timeout = aiohttp.ClientTimeout(total=timeout if timeout is not None else config.http_timeout_s)
        self._session: Optional[aiohttp.ClientSession] = None
        self.bucket_dir.mkdir(parents=True, exist_ok=True)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    def _require(self, sandbox_id: str) -> Deployment:
        deployment = self.store.get(sandbox_id)
        if deployment is None:
            raise NotFoundError("Sandbox not found")
        return deployment

    async def _fetch_manifest(self, meta_url: str) -> ProjectManifest:
        session = await self._get_session()
        try:
            async with session.get(meta_url) as resp:
                if resp.status >= 400:
                    raise SetupError(f"Failed to fetch meta.json: HTTP {resp.status} {resp.reason}")
                payload = await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise SetupError(f"Failed to fetch meta.json: {e}") from e
        except ValueError as e:
            raise SetupError(f"meta.json is not valid JSON: {e}") from e

        try:
            return ProjectManifest.model_validate(payload)
        except PydanticValidationError as e:
            raise ManifestError(f"Invalid meta.json: {e}") from e

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def deploy(self, meta_url: str, namespace: Optional[str] = None) -> DeployResult:
        manifest = await self._fetch_manifest(meta_url)
        if not manifest.entry:
            raise ManifestError('meta.json must contain "entry"')

        work_dir = tempfile.mkdtemp(prefix="sandbox-deploy-", dir=self.config.storage.work_root)
        try:
            targets = []
            for file in manifest.files:
                if not file.url:
                    continue
                dest = resolve_inside(work_dir, file.path)
                if dest is None:
                    raise ManifestError(f"File path escapes the deployment directory: {file.path}")
                targets.append((file.url, dest))

            session = await self._get_session()
            downloads = [asyncio.ensure_future(download_file(session, url, dest)) for url, dest in targets]
            try:
                await asyncio.gather(*downloads)
            except BaseException:
                # Stop sibling downloads before the directory goes away.
                for task in downloads:
                    task.cancel()
                await asyncio.gather(*downloads, return_exceptions=True)
                raise
        except BaseException:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise

        sandbox_id = str(uuid.uuid4())
        await self.store.add(Deployment(
            sandbox_id=sandbox_id,
            work_dir=work_dir,
            entry=manifest.entry,
            meta_url=meta_url,
            namespace=namespace,
        ))
        logger.info("Deployed %s (entry=%s, %d files) into %s", sandbox_id, manifest.entry, len(manifest.files), work_dir)
        return DeployResult(sandbox_id=sandbox_id)

    async def invoke(
        self,
        sandbox_id: str,
        data: Any,
        upload_config: Optional[UploadConfig] = None,
    ) -> InvokeResult:
        deployment = self._require(sandbox_id)
        if not self.isolation.is_sandboxing_enabled():
            self.isolation.initialize(self.config.isolation)

        execution_id = str(uuid.uuid4())
        initial_files = walk(deployment.work_dir)

        python_cmd = f"{shlex.quote(self.config.python_path)} -u {shlex.quote(deployment.entry)}"
        if self.probe.is_available():
            command = self.isolation.wrap_with_sandbox(python_cmd, cwd=deployment.work_dir)
        else:
            command = python_cmd

        env = {**os.environ, "SANDBOX_ID": sandbox_id, "PYTHONUNBUFFERED": "1"}
        # No timeout: invokes wait for the entrypoint however long it takes.
        outcome = await run_shell(
            command,
            cwd=deployment.work_dir,
            env=env,
            stdin_data=json.dumps(data) + "\n",
        )

        if outcome.exit_code != 0:
            stderr = self.isolation.annotate_stderr_with_sandbox_failures(python_cmd, outcome.stderr)
            logger.warning("[%s] Invoke failed with code %s. Stderr: %s", sandbox_id, outcome.exit_code, stderr)
            raise ProcessError(outcome.exit_code, stderr, signal=outcome.signal)

        uploads: List[UploadResult] = []
        new_files = cache_to_local_bucket(
            deployment.work_dir,
            self.bucket_dir / "invokes" / execution_id,
            exclude=initial_files,
        )
        if new_files and upload_config is not None and upload_config.enabled:
            uploads = await upload_files(
                deployment.work_dir,
                upload_config,
                exclude=initial_files,
                session=await self._get_session(),
            )

        return InvokeResult(execution_id=execution_id, result=outcome.stdout.strip(), uploads=uploads)

    async def patch(
        self,
        sandbox_id: str,
        changes: Iterable[Union[FileChange, Dict[str, Any]]],
        reload: bool = False,
    ) -> int:
        """Apply file changes to a live deployment. ``reload`` is accepted but has no effect."""
        deployment = self._require(sandbox_id)

        applied = 0
        for change in changes:
            if not isinstance(change, FileChange):
                try:
                    change = FileChange.model_validate(change)
                except PydanticValidationError as e:
                    raise RequestValidationError(f"Invalid change: {e}") from e

            file_path = resolve_inside(deployment.work_dir, change.path)
            if file_path is None:
                raise RequestValidationError(f"Path escapes the deployment directory: {change.path}")

            if change.type == "delete":
                file_path.unlink(missing_ok=True)
            else:
                if not change.url:
                    raise RequestValidationError(f"URL required for {change.type}")
                await download_file(await self._get_session(), change.url, file_path)
            applied += 1

        logger.info("Patched %d file(s) in %s (reload=%s ignored)", applied, sandbox_id, reload)
        return applied

    # ------------------------------------------------------------------
    # Registry accessors
    # ------------------------------------------------------------------

    def list_deployments(self) -> List[Deployment]:
        return self.store.values()

    def get_deployment(self, sandbox_id: str) -> Optional[Deployment]:
        return self.store.get(sandbox_id)

    async def delete_deployment(self, sandbox_id: str) -> None:
        deployment = self._require(sandbox_id)
        try:
            shutil.rmtree(deployment.work_dir)
        except OSError as e:
            logger.error("Failed to cleanup workDir for %s: %s", sandbox_id, e)
        await self.store.remove(sandbox_id)
        logger.info("Deleted deployment %s", sandbox_id)

    def get_file(self, execution_id: str, filename: str, kind: str = "invokes") -> Path:
        return resolve_bucket_file(self.bucket_dir, kind, execution_id, filename)
