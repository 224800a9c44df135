"""End-to-end tests for the aiohttp routes.

Each test spins up the real application on an ephemeral port and drives it
with an aiohttp test client. The bwrap binary is pointed at a path that does
not exist, so every run goes through the unsandboxed fallback.
"""

from pathlib import Path

import pytest
from aiohttp import test_utils

from skill_sandbox.config import SandboxServiceConfig
from skill_sandbox.server import SandboxServer
from tests.fakes.fake_file_server import FakeFileServer

ECHO_JSON = (
    "import json, os, sys\n"
    "data = json.load(sys.stdin)\n"
    "print(json.dumps({'echo': data, 'sandbox': os.environ['SANDBOX_ID']}))\n"
)


def _make_config(tmp_path: Path) -> SandboxServiceConfig:
    config = SandboxServiceConfig()
    config.storage.bucket_dir = str(tmp_path / "bucket")
    config.storage.work_root = str(tmp_path / "work")
    config.isolation.bwrap_path = str(tmp_path / "no-such-bwrap")
    (tmp_path / "work").mkdir()
    return config


class _Harness:
    """Runs a SandboxServer behind a TestClient for the duration of a test."""

    def __init__(self, tmp_path: Path):
        self.server = SandboxServer(_make_config(tmp_path))
        self.client = test_utils.TestClient(test_utils.TestServer(self.server.create_app()))

    async def __aenter__(self) -> test_utils.TestClient:
        await self.client.start_server()
        return self.client

    async def __aexit__(self, *exc) -> None:
        await self.client.close()


async def _deploy(client: test_utils.TestClient, files: FakeFileServer, source: str) -> str:
    files.add_file("main.py", source)
    meta_url = files.add_manifest("svc", entry="main.py", files=["main.py"])
    resp = await client.post("/deploy", json={"metaUrl": meta_url})
    assert resp.status == 200
    body = await resp.json()
    assert body["status"] == "success"
    return body["sandboxId"]


# ---------------------------------------------------------------------------
# /execute
# ---------------------------------------------------------------------------


class TestExecuteRoute:
    @pytest.mark.asyncio
    async def test_execute_returns_envelope(self, tmp_path):
        async with _Harness(tmp_path) as client:
            resp = await client.post("/execute", json={"code": "print(6 * 7)"})
            assert resp.status == 200
            body = await resp.json()
        assert body["stdout"].strip() == "42"
        assert body["exitCode"] == 0
        assert body["signal"] is None
        assert body["executionId"]
        assert body["uploads"] == []

    @pytest.mark.asyncio
    async def test_missing_code_is_400(self, tmp_path):
        async with _Harness(tmp_path) as client:
            resp = await client.post("/execute", json={"timeoutMs": 100})
            assert resp.status == 400
            body = await resp.json()
        assert body["error"] == "Invalid request"
        assert body["details"]

    @pytest.mark.asyncio
    async def test_malformed_json_is_400(self, tmp_path):
        async with _Harness(tmp_path) as client:
            resp = await client.post(
                "/execute", data="{not json", headers={"Content-Type": "application/json"},
            )
            assert resp.status == 400

            resp = await client.post(
                "/execute", data=b'{"code": "\xff"}', headers={"Content-Type": "application/json"},
            )
            assert resp.status == 400
            assert (await resp.json())["error"] == "Invalid request"

    @pytest.mark.asyncio
    async def test_timeout_reported_as_signal(self, tmp_path):
        async with _Harness(tmp_path) as client:
            resp = await client.post(
                "/execute", json={"code": "import time\ntime.sleep(30)", "timeoutMs": 300},
            )
            body = await resp.json()
        assert resp.status == 200
        assert body["exitCode"] is None
        assert body["signal"] == "SIGKILL"

    @pytest.mark.asyncio
    async def test_execution_file_download(self, tmp_path):
        async with _Harness(tmp_path) as client:
            code = "import os\nos.makedirs('data')\nopen('data/out.txt', 'w').write('hi')\n"
            resp = await client.post("/execute", json={"code": code})
            execution_id = (await resp.json())["executionId"]

            resp = await client.get(f"/executions/{execution_id}/files/data/out.txt")
            assert resp.status == 200
            assert await resp.text() == "hi"

            resp = await client.get(f"/executions/{execution_id}/files/missing.txt")
            assert resp.status == 404
            assert (await resp.json())["error"] == "File not found"


# ---------------------------------------------------------------------------
# Deployments
# ---------------------------------------------------------------------------


class TestDeploymentRoutes:
    @pytest.mark.asyncio
    async def test_deploy_and_invoke_merges_json_result(self, tmp_path):
        async with FakeFileServer() as files, _Harness(tmp_path) as client:
            sandbox_id = await _deploy(client, files, ECHO_JSON)
            resp = await client.post(f"/services/{sandbox_id}", json={"data": {"n": 1}})
            assert resp.status == 200
            body = await resp.json()
        assert body["echo"] == {"n": 1}
        assert body["sandbox"] == sandbox_id
        assert body["executionId"]
        assert "uploads" not in body

    @pytest.mark.asyncio
    async def test_body_without_data_key_passed_through(self, tmp_path):
        async with FakeFileServer() as files, _Harness(tmp_path) as client:
            sandbox_id = await _deploy(client, files, ECHO_JSON)
            resp = await client.post(f"/services/{sandbox_id}", json={"n": 2})
            body = await resp.json()
        assert body["echo"] == {"n": 2}

    @pytest.mark.asyncio
    async def test_plain_text_result_wrapped(self, tmp_path):
        async with FakeFileServer() as files, _Harness(tmp_path) as client:
            sandbox_id = await _deploy(client, files, "print('not json')\n")
            resp = await client.post(f"/services/{sandbox_id}", json={"data": None})
            body = await resp.json()
        assert body["result"] == "not json"
        assert body["executionId"]

    @pytest.mark.asyncio
    async def test_invoke_uploads_and_file_route(self, tmp_path):
        source = "import sys\nsys.stdin.read()\nopen('report.txt', 'w').write('r')\nprint('{}')\n"
        async with FakeFileServer() as files, _Harness(tmp_path) as client:
            sandbox_id = await _deploy(client, files, source)
            resp = await client.post(f"/services/{sandbox_id}", json={
                "data": {},
                "fileUploadUrl": files.upload_url,
                "uploadToken": files.token,
            })
            body = await resp.json()
            assert [u["filename"] for u in body["uploads"]] == ["report.txt"]

            resp = await client.get(f"/invokes/{body['executionId']}/files/report.txt")
            assert resp.status == 200
            assert await resp.text() == "r"
        assert files.uploaded_names() == ["report.txt"]

    @pytest.mark.asyncio
    async def test_failing_entrypoint_is_500(self, tmp_path):
        source = "import sys\nsys.stderr.write('kaput')\nsys.exit(4)\n"
        async with FakeFileServer() as files, _Harness(tmp_path) as client:
            sandbox_id = await _deploy(client, files, source)
            resp = await client.post(f"/services/{sandbox_id}", json={"data": 1})
            assert resp.status == 500
            body = await resp.json()
        assert "code 4" in body["error"]
        assert "kaput" in body["error"]

    @pytest.mark.asyncio
    async def test_unknown_sandbox_is_404(self, tmp_path):
        async with _Harness(tmp_path) as client:
            resp = await client.post("/services/nope", json={"data": 1})
            assert resp.status == 404
            resp = await client.get("/deployments/nope")
            assert resp.status == 404
            resp = await client.delete("/deployments/nope")
            assert resp.status == 404

    @pytest.mark.asyncio
    async def test_deploy_without_entry_is_500(self, tmp_path):
        async with FakeFileServer() as files, _Harness(tmp_path) as client:
            files.add_file("main.py", "print(1)")
            meta_url = files.add_manifest("noentry", entry=None, files=["main.py"])
            resp = await client.post("/deploy", json={"metaUrl": meta_url})
            assert resp.status == 500
            assert "entry" in (await resp.json())["error"]

    @pytest.mark.asyncio
    async def test_deploy_requires_meta_url(self, tmp_path):
        async with _Harness(tmp_path) as client:
            resp = await client.post("/deploy", json={})
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_patch_list_get_delete(self, tmp_path):
        async with FakeFileServer() as files, _Harness(tmp_path) as client:
            sandbox_id = await _deploy(client, files, "print('v1')\n")

            files.add_file("v2.py", "print('v2')\n")
            resp = await client.post("/deploy/patch", json={
                "sandboxId": sandbox_id,
                "changes": [{"type": "modify", "path": "main.py", "url": files.file_url("v2.py")}],
                "reload": True,
            })
            assert resp.status == 200
            body = await resp.json()
            assert body == {"status": "success", "restarted": True, "message": "Patched 1 file(s)"}

            resp = await client.post(f"/services/{sandbox_id}", json={"data": None})
            assert (await resp.json())["result"] == "v2"

            resp = await client.get("/deployments")
            listed = (await resp.json())["deployments"]
            assert [d["sandboxId"] for d in listed] == [sandbox_id]

            resp = await client.get(f"/deployments/{sandbox_id}")
            assert (await resp.json())["entry"] == "main.py"

            resp = await client.delete(f"/deployments/{sandbox_id}")
            assert resp.status == 200
            resp = await client.get("/deployments")
            assert (await resp.json())["deployments"] == []

    @pytest.mark.asyncio
    async def test_patch_with_bad_change_is_400(self, tmp_path):
        async with _Harness(tmp_path) as client:
            resp = await client.post("/deploy/patch", json={
                "sandboxId": "x", "changes": [{"type": "move", "path": "a"}],
            })
            assert resp.status == 400


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class TestHealthRoute:
    @pytest.mark.asyncio
    async def test_health_reports_state(self, tmp_path):
        harness = _Harness(tmp_path)
        async with harness as client:
            resp = await client.get("/health")
            assert resp.status == 200
            body = await resp.json()
            assert harness.server.cleanup.running
        assert body["ok"] is True
        assert body["sandbox_available"] is False
        assert body["deployments"] == 0
        assert body["bucket_dir"] == str(tmp_path / "bucket")
        assert not harness.server.cleanup.running
