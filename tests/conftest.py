"""Shared pytest fixtures for Comfygate tests.

The ComfyUI engine is simulated with :class:`FakeEngine`, an
``httpx.MockTransport`` handler that implements just enough of the engine's
HTTP API (``/prompt``, ``/history``, ``/upload/*``, ``/view``) for the
client, binder, gateway and API to run end to end without a server.
"""

import copy
import json
import re
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import httpx
import pytest

from comfygate.core.binder import UNSET_SEED
from comfygate.core.comfy_client import ComfyClient
from comfygate.core.config import ComfygateConfig
from comfygate.core.errors import UploadError

SAMPLE_WORKFLOW = {
    "3": {
        "class_type": "LoadImage",
        "inputs": {"image": "example.png", "upload": "image"},
    },
    "4": {
        "class_type": "CheckpointLoaderSimple",
        "inputs": {"ckpt_name": "sd_xl_base_1.0.safetensors"},
    },
    "5": {
        "class_type": "KSampler",
        "inputs": {
            "seed": UNSET_SEED,
            "steps": 20,
            "cfg": 7.0,
            "model": ["4", 0],
            "positive": ["6", 0],
        },
    },
    "6": {
        "class_type": "CLIPTextEncode",
        "inputs": {"text": "a cat", "clip": ["4", 1]},
    },
    "9": {
        "class_type": "SaveImage",
        "inputs": {"filename_prefix": "ComfyUI", "images": ["8", 0]},
    },
}

_FIELD_RE = re.compile(rb'name="(?P<name>[^"]+)"(?:; filename="(?P<filename>[^"]*)")?')


def _parse_multipart(request: httpx.Request) -> tuple[dict[str, str], str | None, bytes]:
    """Return ``(text fields, uploaded filename, uploaded bytes)`` of a form post."""
    content_type = request.headers["content-type"]
    boundary = content_type.split("boundary=", 1)[1].encode()
    fields: dict[str, str] = {}
    filename = None
    file_content = b""

    for part in request.content.split(b"--" + boundary):
        head, sep, body = part.partition(b"\r\n\r\n")
        if not sep:
            continue
        match = _FIELD_RE.search(head)
        if match is None:
            continue
        body = body[:-2] if body.endswith(b"\r\n") else body
        if match.group("filename") is not None:
            filename = match.group("filename").decode()
            file_content = body
        else:
            fields[match.group("name").decode()] = body.decode()

    return fields, filename, file_content


async def _dropped_body(partial: bytes, request: httpx.Request):
    yield partial
    raise httpx.ReadError("Connection reset by peer", request=request)


class FakeEngine:
    """In-memory stand-in for a ComfyUI server.

    Attributes:
        prompts: Graphs received on ``/prompt``.
        uploads: One dict per upload (endpoint, filename, fields, content).
        views: File names requested through ``/view``.
        outputs: History outputs to report.  When ``None`` they are derived
            from the submitted graph's ``SaveImage`` prefixes.
        files: Bytes served by ``/view`` keyed by file name.
        status: History ``status`` block reported for finished prompts.
        pending_polls: Number of history polls answered with ``{}`` first.
        prompt_error: ``(status code, body)`` returned by ``/prompt``.
        reject_uploads: Answer uploads with HTTP 400.
        broken_views: Files whose ``/view`` body sends these bytes and then
            drops the connection.
    """

    def __init__(self) -> None:
        self.prompts: list[dict] = []
        self.uploads: list[dict] = []
        self.views: list[str] = []
        self.outputs: dict | None = None
        self.files: dict[str, bytes] = {}
        self.status: dict = {"status_str": "success", "completed": True, "messages": []}
        self.pending_polls = 0
        self.prompt_error: tuple[int, object] | None = None
        self.reject_uploads = False
        self.assigned_names: dict[str, str] = {}
        self.broken_views: dict[str, bytes] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path

        if path == "/prompt":
            if self.prompt_error is not None:
                status, body = self.prompt_error
                if isinstance(body, (dict, list)):
                    return httpx.Response(status, json=body)
                return httpx.Response(status, text=str(body))
            graph = json.loads(request.content)["prompt"]
            self.prompts.append(graph)
            if self.outputs is None:
                self.outputs = self._outputs_for(graph)
            return httpx.Response(200, json={"prompt_id": "p-1", "number": 0, "node_errors": {}})

        if path.startswith("/history/"):
            prompt_id = path.rsplit("/", 1)[1]
            if self.pending_polls > 0:
                self.pending_polls -= 1
                return httpx.Response(200, json={})
            return httpx.Response(
                200,
                json={prompt_id: {"status": self.status, "outputs": self.outputs or {}}},
            )

        if path.startswith("/upload/"):
            fields, filename, content = _parse_multipart(request)
            self.uploads.append(
                {"endpoint": path, "filename": filename, "fields": fields, "content": content}
            )
            if self.reject_uploads:
                return httpx.Response(400, text="Invalid image file")
            name = self.assigned_names.get(filename, filename)
            return httpx.Response(
                200, json={"name": name, "subfolder": fields.get("subfolder", ""), "type": "input"}
            )

        if path == "/view":
            filename = request.url.params["filename"]
            self.views.append(filename)
            if filename in self.broken_views:
                return httpx.Response(
                    200,
                    content=_dropped_body(self.broken_views[filename], request),
                    headers={"content-type": "image/png"},
                )
            if filename not in self.files:
                return httpx.Response(404, text="Not found")
            return httpx.Response(
                200, content=self.files[filename], headers={"content-type": "image/png"}
            )

        return httpx.Response(404, text="Not found")

    def _outputs_for(self, graph: dict) -> dict:
        outputs = {}
        for node_id, node in graph.items():
            if node.get("class_type") != "SaveImage":
                continue
            filename = f"{node['inputs']['filename_prefix']}00001_.png"
            self.files.setdefault(filename, b"\x89PNG" + filename.encode())
            outputs[node_id] = {
                "images": [{"filename": filename, "subfolder": "", "type": "output"}]
            }
        return outputs

    def client(self, **kwargs) -> "CountingComfyClient":
        kwargs.setdefault("poll_interval", 0.001)
        return CountingComfyClient(
            "http://comfy.test",
            transport=httpx.MockTransport(self.handler),
            **kwargs,
        )


class CountingComfyClient(ComfyClient):
    """ComfyClient that counts how often it is closed."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.close_calls = 0

    async def close(self) -> None:
        self.close_calls += 1
        await super().close()


class RecordingClient:
    """Upload-only fake that records every call in order."""

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.reject = False

    async def upload_asset(
        self,
        content,
        filename,
        *,
        kind="image",
        overwrite=False,
        subfolder="",
        original_ref=None,
        content_type="application/octet-stream",
    ):
        if self.reject:
            raise UploadError(f"Failed to upload {filename}", ["Invalid image file"])
        self.calls.append(
            {
                "content": content,
                "filename": filename,
                "kind": kind,
                "overwrite": overwrite,
                "subfolder": subfolder,
                "original_ref": json.loads(original_ref) if original_ref else None,
            }
        )
        if subfolder:
            return f"{subfolder}/{filename}"
        return f"engine_{filename}"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> ComfygateConfig:
    """Create a test configuration pointing at temporary paths."""
    output_dir = temp_dir / "comfy_output"
    output_dir.mkdir()

    return ComfygateConfig(
        _env_file=None,
        comfy_base_url="http://comfy.test",
        comfy_output_dir=output_dir,
        view_comfy_file=temp_dir / "view_comfy.json",
        poll_interval=0.01,
        execution_timeout=5.0,
    )


@pytest.fixture
def sample_workflow() -> dict:
    """Return a fresh copy of a small image-to-image workflow template."""
    return copy.deepcopy(SAMPLE_WORKFLOW)


@pytest.fixture
def fake_engine() -> FakeEngine:
    """Return a fake ComfyUI engine."""
    return FakeEngine()


@pytest.fixture
def recording_client() -> RecordingClient:
    """Return an upload-recording fake client."""
    return RecordingClient()
