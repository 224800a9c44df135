#!/usr/bin/env python3
"""
Sandbox Server - HTTP front for one-shot executions and deployed skills.

Usage:
    python -m skill_sandbox.server --port 8080

API:
    POST   /execute                                   - Run code once, return output envelope
    GET    /executions/{execution_id}/files/{name}    - Download a file from an execution snapshot
    POST   /deploy                                    - Materialize a deployment from meta.json
    POST   /deploy/patch                              - Add/modify/delete files of a deployment
    POST   /services/{sandbox_id}                     - Invoke a deployment with JSON input
    GET    /deployments                               - List deployments
    GET    /deployments/{sandbox_id}                  - Get one deployment
    DELETE /deployments/{sandbox_id}                  - Delete a deployment and its directory
    GET    /invokes/{execution_id}/files/{name}       - Download a file produced by an invoke
    GET    /health                                    - Health check
"""

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, Optional

from aiohttp import web

from .availability import SandboxAvailabilityProbe
from .cleanup import BucketCleanupService
from .config import SandboxServiceConfig
from .deployments import DeploymentManager
from .errors import NotFoundError, SandboxError
from .execution import ExecutionService
from .isolation import BubblewrapIsolation
from .schemas import DeployRequest, ExecuteRequest, InvokeRequest, PatchRequest, parse_request

logger = logging.getLogger(__name__)


def _error_response(exc: Exception) -> web.Response:
    if isinstance(exc, SandboxError):
        body: Dict[str, Any] = {"error": str(exc)}
        details = getattr(exc, "details", None)
        if details:
            body["details"] = details
        return web.json_response(body, status=exc.status)
    logger.exception("Unhandled error")
    return web.json_response({"error": "Internal error", "message": str(exc)}, status=500)


async def _read_json(request: web.Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        # Covers both malformed JSON and bodies that are not valid UTF-8.
        return None


class SandboxServer:
    """
    Wires the execution service and deployment manager to HTTP routes.

    One isolation wrapper and one availability probe are shared by both services,
    so the sandbox probe runs at most once per server.
    """

    def __init__(self, config: Optional[SandboxServiceConfig] = None):
        self.config = config or SandboxServiceConfig()
        self.isolation = BubblewrapIsolation()
        self.probe = SandboxAvailabilityProbe(self.isolation, self.config.isolation)
        self.executions = ExecutionService(self.config, self.isolation, self.probe)
        self.deployments = DeploymentManager(self.config, self.isolation, self.probe)
        self.cleanup = BucketCleanupService(self.config.storage)

    # HTTP Handlers

    async def handle_execute(self, request: web.Request) -> web.Response:
        """Handle POST /execute."""
        parsed = parse_request(ExecuteRequest, await _read_json(request))
        if not parsed.ok:
            return _error_response(parsed.error)
        try:
            result = await self.executions.execute_request(parsed.value)
        except SandboxError as e:
            return web.json_response({"error": "Execution failed", "message": str(e)}, status=e.status)
        except Exception as e:
            return _error_response(e)
        return web.json_response(result.to_dict())

    async def handle_execution_file(self, request: web.Request) -> web.StreamResponse:
        """Handle GET /executions/{execution_id}/files/{filename}."""
        try:
            path = self.executions.get_file(
                request.match_info["execution_id"],
                request.match_info["filename"],
            )
        except NotFoundError as e:
            return _error_response(e)
        return web.FileResponse(path)

    async def handle_deploy(self, request: web.Request) -> web.Response:
        """Handle POST /deploy."""
        logger.info("Received request to deploy project")
        parsed = parse_request(DeployRequest, await _read_json(request))
        if not parsed.ok:
            return _error_response(parsed.error)
        try:
            result = await self.deployments.deploy(parsed.value.metaUrl, parsed.value.namespace)
        except Exception as e:
            return _error_response(e)
        return web.json_response({
            "status": "success",
            "sandboxId": result.sandbox_id,
            "message": result.message,
        })

    async def handle_patch(self, request: web.Request) -> web.Response:
        """Handle POST /deploy/patch."""
        parsed = parse_request(PatchRequest, await _read_json(request))
        if not parsed.ok:
            return _error_response(parsed.error)
        req = parsed.value
        try:
            applied = await self.deployments.patch(req.sandboxId, req.changes, req.reload)
        except Exception as e:
            return _error_response(e)
        return web.json_response({
            "status": "success",
            "restarted": req.reload,
            "message": f"Patched {applied} file(s)",
        })

    async def handle_invoke(self, request: web.Request) -> web.Response:
        """Handle POST /services/{sandbox_id}."""
        sandbox_id = request.match_info["sandbox_id"]
        body = await _read_json(request)

        # Bodies that don't look like an invoke request are passed through whole as input.
        parsed = parse_request(InvokeRequest, body)
        if parsed.ok and isinstance(body, dict) and "data" in body:
            data = parsed.value.data
            upload_config = parsed.value.upload_config()
        else:
            data = body
            upload_config = None

        try:
            result = await self.deployments.invoke(sandbox_id, data, upload_config)
        except Exception as e:
            return _error_response(e)

        uploads = [u.to_dict() for u in result.uploads]
        try:
            response_data = json.loads(result.result)
        except ValueError:
            response_data = {"result": result.result}

        if isinstance(response_data, dict):
            response_data["executionId"] = result.execution_id
            if uploads:
                response_data["uploads"] = uploads
            return web.json_response(response_data)
        return web.json_response({
            "executionId": result.execution_id,
            "result": response_data,
            "uploads": uploads,
        })

    async def handle_list_deployments(self, request: web.Request) -> web.Response:
        """Handle GET /deployments."""
        return web.json_response({
            "deployments": [d.to_dict() for d in self.deployments.list_deployments()],
        })

    async def handle_get_deployment(self, request: web.Request) -> web.Response:
        """Handle GET /deployments/{sandbox_id}."""
        deployment = self.deployments.get_deployment(request.match_info["sandbox_id"])
        if deployment is None:
            return _error_response(NotFoundError("Sandbox not found"))
        return web.json_response(deployment.to_dict())

    async def handle_delete_deployment(self, request: web.Request) -> web.Response:
        """Handle DELETE /deployments/{sandbox_id}."""
        try:
            await self.deployments.delete_deployment(request.match_info["sandbox_id"])
        except Exception as e:
            return _error_response(e)
        return web.json_response({"status": "success"})

    async def handle_invoke_file(self, request: web.Request) -> web.StreamResponse:
        """Handle GET /invokes/{execution_id}/files/{filename}."""
        try:
            path = self.deployments.get_file(
                request.match_info["execution_id"],
                request.match_info["filename"],
                "invokes",
            )
        except NotFoundError as e:
            return _error_response(e)
        return web.FileResponse(path)

    async def handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /health."""
        return web.json_response({
            "ok": True,
            "sandbox_available": self.probe.is_available(),
            "deployments": len(self.deployments.store),
            "bucket_dir": str(self.config.storage.bucket_dir),
        })

    async def _on_startup(self, app: web.Application) -> None:
        self.cleanup.start()

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.cleanup.stop()
        await self.deployments.close()

    def create_app(self) -> web.Application:
        """Create the aiohttp application."""
        app = web.Application()

        app.router.add_post("/execute", self.handle_execute)
        app.router.add_get("/executions/{execution_id}/files/{filename:.+}", self.handle_execution_file)
        app.router.add_post("/deploy", self.handle_deploy)
        app.router.add_post("/deploy/patch", self.handle_patch)
        app.router.add_post("/services/{sandbox_id}", self.handle_invoke)
        app.router.add_get("/deployments", self.handle_list_deployments)
        app.router.add_get("/deployments/{sandbox_id}", self.handle_get_deployment)
        app.router.add_delete("/deployments/{sandbox_id}", self.handle_delete_deployment)
        app.router.add_get("/invokes/{execution_id}/files/{filename:.+}", self.handle_invoke_file)
        app.router.add_get("/health", self.handle_health)

        app.on_startup.append(self._on_startup)
        app.on_cleanup.append(self._on_cleanup)
        return app


def create_app(config: Optional[SandboxServiceConfig] = None) -> web.Application:
    return SandboxServer(config).create_app()


def main():
    """Run the sandbox server."""
    config = SandboxServiceConfig.from_env()

    parser = argparse.ArgumentParser(description="Sandbox Server for untrusted Python code")
    parser.add_argument("--port", type=int, default=config.port, help="Port to listen on")
    parser.add_argument("--host", type=str, default=config.host, help="Host to bind to")
    parser.add_argument(
        "--bucket-dir",
        type=str,
        default=config.storage.bucket_dir,
        help="Directory for cached execution/invoke artifacts",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=os.getenv("SANDBOX_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    config.host = args.host
    config.port = args.port
    config.storage.bucket_dir = args.bucket_dir

    logger.info("Starting Sandbox Server on %s:%s", config.host, config.port)
    logger.info("Bucket directory: %s", config.storage.bucket_dir)
    logger.info("Python interpreter: %s", config.python_path)

    app = create_app(config)
    web.run_app(app, host=config.host, port=config.port, print=None)


if __name__ == "__main__":
    main()
