"""
Service configuration.

Mirrors the stateful pydantic config pattern: every knob has a default, and
``SandboxServiceConfig.from_env()`` layers a repo-local ``.env`` file, ``SANDBOX_*``
environment variables and an optional YAML isolation file on top.
"""

from __future__ import annotations

import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class StorageConfig(BaseModel):
    bucket_dir: str = Field(
        default_factory=lambda: os.path.join(tempfile.gettempdir(), "skill-sandbox-bucket"),
        description="Root of the local artifact bucket (executions/ and invokes/ live here).",
    )
    work_root: Optional[str] = Field(
        default=None,
        description="Parent directory for per-run and per-deployment working dirs (system temp if unset).",
    )
    retention_ms: int = Field(default=24 * 60 * 60 * 1000)
    cleanup_interval_ms: int = Field(default=60 * 60 * 1000)


class NetworkConfig(BaseModel):
    # ["*"] shares the host network; an empty list isolates it. Bubblewrap cannot
    # filter individual domains, so any other list behaves like ["*"].
    allowed_domains: List[str] = Field(default_factory=lambda: ["*"])


class FilesystemConfig(BaseModel):
    deny_read: List[str] = Field(default_factory=list)
    allow_write: List[str] = Field(default_factory=list)
    deny_write: List[str] = Field(default_factory=list)


class IsolationConfig(BaseModel):
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    filesystem: FilesystemConfig = Field(default_factory=FilesystemConfig)
    bwrap_path: str = Field(default="bwrap")
    probe_timeout_s: float = Field(default=3.0)


class SandboxServiceConfig(BaseModel):
    python_path: str = Field(default=sys.executable, description="Interpreter used for every run.")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)
    http_timeout_s: float = Field(
        default=60.0,
        description="Total timeout for manifest fetches and file downloads.",
    )
    storage: StorageConfig = Field(default_factory=StorageConfig)
    isolation: IsolationConfig = Field(default_factory=IsolationConfig)

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "SandboxServiceConfig":
        # Prefer a repo-local `.env` in dev; real environment variables still win.
        env_path = env_file or Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(dotenv_path=env_path)

        def _get_list(name: str) -> Optional[List[str]]:
            raw = os.getenv(name)
            if raw is None:
                return None
            return [item.strip() for item in raw.split(",") if item.strip()]

        isolation_data: Dict[str, Any] = {}
        isolation_file = os.getenv("SANDBOX_ISOLATION_CONFIG")
        if isolation_file:
            with open(isolation_file, encoding="utf-8") as f:
                isolation_data = yaml.safe_load(f) or {}
            logger.info("Loaded isolation config from %s", isolation_file)

        isolation = IsolationConfig(**isolation_data)
        allowed_domains = _get_list("SANDBOX_ALLOWED_DOMAINS")
        if allowed_domains is not None:
            isolation.network.allowed_domains = allowed_domains
        if os.getenv("SANDBOX_BWRAP_PATH"):
            isolation.bwrap_path = os.environ["SANDBOX_BWRAP_PATH"]

        storage = StorageConfig(
            retention_ms=int(os.getenv("SANDBOX_RETENTION_MS", str(24 * 60 * 60 * 1000))),
            cleanup_interval_ms=int(os.getenv("SANDBOX_CLEANUP_INTERVAL_MS", str(60 * 60 * 1000))),
            work_root=os.getenv("SANDBOX_WORK_ROOT") or None,
        )
        if os.getenv("SANDBOX_BUCKET_DIR"):
            storage.bucket_dir = os.environ["SANDBOX_BUCKET_DIR"]

        return cls(
            python_path=os.getenv("SANDBOX_PYTHON") or sys.executable,
            host=os.getenv("SANDBOX_HOST", "0.0.0.0"),
            port=int(os.getenv("SANDBOX_PORT", "8080")),
            http_timeout_s=float(os.getenv("SANDBOX_HTTP_TIMEOUT_S", "60")),
            storage=storage,
            isolation=isolation,
        )
