"""HTTP client for the ComfyUI generation engine.

:class:`ComfyClient` is the only code that talks to the engine.  It wraps a
single ``httpx.AsyncClient`` and is meant to live for exactly one request:
the binder uploads through it, the gateway submits and fetches through it,
and the gateway closes it when the response stream ends.

Engine Contract
---------------
========  ========================  ==========================================
Method    Path                      Purpose
========  ========================  ==========================================
POST      ``/prompt``               Queue a graph, returns ``prompt_id``
GET       ``/history/{prompt_id}``  Execution status and node outputs
POST      ``/upload/image``         Upload an input image (multipart)
POST      ``/upload/mask``          Upload a mask layered over ``original_ref``
GET       ``/view``                 Download one output file
========  ========================  ==========================================

Output Discovery
----------------
A finished history entry maps node ids to output dictionaries whose list
values hold the produced files::

    {"9": {"images": [{"filename": "x_00001_.png", "subfolder": "", "type": "output"}]}}

Dict items become remote :class:`ArtifactDescriptor` values fetched through
``/view``.  Some custom nodes report a JSON *string* such as
``'{"type": "output", "filename": "clip.mp4"}'`` instead; those are files
already materialized in the engine's output directory on this host and are
read from disk.  Any other string is a text output, kept only when text
output is enabled for the run.
"""

from __future__ import annotations

import json
import logging
import mimetypes
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlencode

import anyio
import httpx

from comfygate.core.config import ComfygateConfig
from comfygate.core.errors import (
    ComfyError,
    ComfyExecutionError,
    ComfyTransportError,
    UploadError,
    generic_execution_error,
    parse_execution_error,
    parse_prompt_error,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
DEFAULT_CONTENT_TYPE = "application/octet-stream"
TEXT_CONTENT_TYPE = "text/plain; charset=utf-8"


@dataclass(frozen=True)
class ArtifactDescriptor:
    """One output the engine reported for a run.

    Attributes:
        filename: File name as reported by the engine.
        subfolder: Engine subfolder (may be empty).
        kind: Engine folder type: ``"output"``, ``"input"``, ``"temp"``, or
            ``"text"`` for inline text outputs.
        node_id: Id of the node that produced the artifact.
        local: ``True`` when the file is read from the engine's output
            directory instead of ``/view``.
        text: Inline content for text outputs.
    """

    filename: str
    subfolder: str = ""
    kind: str = "output"
    node_id: str | None = None
    local: bool = False
    text: str | None = None

    def view_path(self) -> str:
        """Return the engine-relative ``/view`` path for this artifact."""
        params = {"filename": self.filename, "subfolder": self.subfolder, "type": self.kind}
        return f"/view?{urlencode(params)}"


def guess_content_type(filename: str) -> str:
    return mimetypes.guess_type(filename)[0] or DEFAULT_CONTENT_TYPE


def _parse_local_output(raw: str, node_id: str) -> ArtifactDescriptor | None:
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(data, dict) or data.get("type") != "output" or not data.get("filename"):
        return None
    return ArtifactDescriptor(
        filename=str(data["filename"]),
        subfolder=str(data.get("subfolder") or ""),
        kind="output",
        node_id=node_id,
        local=True,
    )


def collect_artifacts(outputs: Any, *, text_output_enabled: bool = False) -> list[ArtifactDescriptor]:
    """Turn a history entry's ``outputs`` into artifact descriptors.

    Order follows the engine's report: node by node, list by list.

    Args:
        outputs: ``history[prompt_id]["outputs"]``.
        text_output_enabled: Keep plain string outputs as text artifacts.

    Returns:
        Descriptors in engine order.
    """
    artifacts: list[ArtifactDescriptor] = []
    if not isinstance(outputs, dict):
        return artifacts

    for node_id, node_output in outputs.items():
        if not isinstance(node_output, dict):
            continue
        for key, items in node_output.items():
            if not isinstance(items, list):
                continue
            for index, item in enumerate(items):
                if isinstance(item, dict):
                    if not item.get("filename"):
                        continue
                    artifacts.append(
                        ArtifactDescriptor(
                            filename=str(item["filename"]),
                            subfolder=str(item.get("subfolder") or ""),
                            kind=str(item.get("type") or "output"),
                            node_id=str(node_id),
                        )
                    )
                elif isinstance(item, str):
                    local = _parse_local_output(item, str(node_id))
                    if local is not None:
                        artifacts.append(local)
                    elif text_output_enabled:
                        artifacts.append(
                            ArtifactDescriptor(
                                filename=f"{node_id}_{key}_{index}.txt",
                                kind="text",
                                node_id=str(node_id),
                                text=item,
                            )
                        )
                    else:
                        logger.debug("Skipping text output %s[%s] of node %s", key, index, node_id)

    return artifacts


def _error_text(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500] or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if error:
            return str(error)
    return f"HTTP {response.status_code}"


async def _iter_file(handle, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
    while True:
        chunk = await handle.read(chunk_size)
        if not chunk:
            break
        yield chunk


async def _single_chunk(data: bytes) -> AsyncIterator[bytes]:
    yield data


class ComfyClient:
    """Per-run client for one ComfyUI server.

    Attributes:
        client_id: Identifier sent with queued prompts.
        base_url: Engine base URL.
    """

    def __init__(
        self,
        base_url: str,
        *,
        client_id: str | None = None,
        output_dir: Path | None = None,
        poll_interval: float = 0.5,
        execution_timeout: float = 180.0,
        request_timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id or str(uuid.uuid4())
        self._output_dir = Path(output_dir) if output_dir is not None else None
        self._poll_interval = poll_interval
        self._execution_timeout = execution_timeout
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=request_timeout,
            transport=transport,
        )
        self._closed = False

    @classmethod
    def from_config(cls, cfg: ComfygateConfig, **kwargs) -> ComfyClient:
        """Build a client from application settings."""
        return cls(
            cfg.comfy_base_url,
            output_dir=cfg.comfy_output_dir,
            poll_interval=cfg.poll_interval,
            execution_timeout=cfg.execution_timeout,
            request_timeout=cfg.request_timeout,
            **kwargs,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> ComfyClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # -- Execution ------------------------------------------------------------

    async def submit_graph(
        self, graph: dict[str, Any], *, text_output_enabled: bool = False
    ) -> list[ArtifactDescriptor]:
        """Queue *graph* and wait until its outputs are known.

        Raises:
            ComfyExecutionError: The engine rejected or failed the graph.
            ComfyTransportError: The engine could not be reached.
        """
        prompt_id = await self.queue_prompt(graph)
        return await self.wait_for_outputs(prompt_id, text_output_enabled=text_output_enabled)

    async def queue_prompt(self, graph: dict[str, Any]) -> str:
        """Queue *graph* for execution and return its prompt id."""
        response = await self._request(
            "POST", "/prompt", json={"prompt": graph, "client_id": self.client_id}
        )

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.is_error:
            logger.error("ComfyUI rejected the prompt (HTTP %s)", response.status_code)
            raise parse_prompt_error(payload) or generic_execution_error()

        if not isinstance(payload, dict):
            raise generic_execution_error()
        if payload.get("node_errors"):
            raise parse_prompt_error(
                {"error": {"message": "Prompt has node errors"}, "node_errors": payload["node_errors"]}
            ) or generic_execution_error()

        prompt_id = payload.get("prompt_id")
        if not prompt_id:
            raise generic_execution_error()

        logger.info("Queued prompt %s (client %s)", prompt_id, self.client_id)
        return str(prompt_id)

    async def wait_for_outputs(
        self, prompt_id: str, *, text_output_enabled: bool = False
    ) -> list[ArtifactDescriptor]:
        """Poll ``/history`` until *prompt_id* finishes and collect its outputs."""
        deadline = time.monotonic() + self._execution_timeout

        while True:
            entry = await self._get_history(prompt_id)
            if entry is not None:
                status = entry.get("status") or {}
                if status.get("status_str") == "error":
                    raise parse_execution_error(status) or generic_execution_error()
                if status.get("completed") or status.get("status_str") == "success" or (
                    not status and entry.get("outputs")
                ):
                    artifacts = collect_artifacts(
                        entry.get("outputs"), text_output_enabled=text_output_enabled
                    )
                    logger.info("Prompt %s finished with %d artifact(s)", prompt_id, len(artifacts))
                    return artifacts

            if time.monotonic() >= deadline:
                raise ComfyExecutionError(
                    "Workflow timed out",
                    [f"Prompt {prompt_id} did not finish within {self._execution_timeout:.0f}s"],
                )
            await anyio.sleep(self._poll_interval)

    async def _get_history(self, prompt_id: str) -> dict[str, Any] | None:
        response = await self._request("GET", f"/history/{prompt_id}")
        if response.status_code == 404:
            return None
        if response.is_error:
            raise ComfyTransportError(
                "Failed to read execution history", [f"HTTP {response.status_code}"]
            )
        try:
            payload = response.json()
        except ValueError:
            return None
        entry = payload.get(prompt_id) if isinstance(payload, dict) else None
        return entry if isinstance(entry, dict) else None

    # -- Uploads --------------------------------------------------------------

    async def upload_asset(
        self,
        content: bytes,
        filename: str,
        *,
        kind: str = "image",
        overwrite: bool = False,
        subfolder: str = "",
        original_ref: str | None = None,
        content_type: str = DEFAULT_CONTENT_TYPE,
    ) -> str:
        """Upload a binary asset and return the name the engine assigned.

        Args:
            content: Raw file bytes.
            filename: Suggested file name; the engine may rename it when
                ``overwrite`` is ``False`` and the name is taken.
            kind: ``"image"`` or ``"mask"``.
            overwrite: Replace an existing file of the same name.
            subfolder: Engine input subfolder (e.g. ``"clipspace"``).
            original_ref: JSON file reference the asset is layered over.
            content_type: MIME type of *content*.

        Returns:
            Engine-assigned name, prefixed with ``<subfolder>/`` when the
            engine stored it in a subfolder.

        Raises:
            UploadError: The engine rejected the file.
        """
        if kind not in ("image", "mask"):
            raise ValueError(f"Unknown upload kind: {kind}")

        data = {"type": "input", "overwrite": "true" if overwrite else "false"}
        if subfolder:
            data["subfolder"] = subfolder
        if original_ref:
            data["original_ref"] = original_ref

        response = await self._request(
            "POST",
            f"/upload/{kind}",
            data=data,
            files={"image": (filename, content, content_type)},
        )
        if response.is_error:
            raise UploadError(f"Failed to upload {filename}", [_error_text(response)])

        try:
            payload = response.json()
        except ValueError:
            payload = None
        name = payload.get("name") if isinstance(payload, dict) else None
        if not name:
            raise UploadError(f"Failed to upload {filename}", ["ComfyUI returned no file name"])

        stored_subfolder = payload.get("subfolder") or ""
        return f"{stored_subfolder}/{name}" if stored_subfolder else str(name)

    # -- Downloads ------------------------------------------------------------

    @asynccontextmanager
    async def fetch_artifact(self, descriptor: ArtifactDescriptor):
        """Open one artifact for streaming.

        Yields:
            Tuple of ``(async byte-chunk iterator, content type)``.

        Raises:
            ComfyError: The artifact cannot be read.
        """
        if descriptor.text is not None:
            yield _single_chunk(descriptor.text.encode("utf-8")), TEXT_CONTENT_TYPE
            return

        if descriptor.local:
            path = self._local_path(descriptor)
            async with await anyio.open_file(path, "rb") as handle:
                yield _iter_file(handle), guess_content_type(descriptor.filename)
            return

        params = {
            "filename": descriptor.filename,
            "subfolder": descriptor.subfolder,
            "type": descriptor.kind,
        }
        try:
            async with self._http.stream("GET", "/view", params=params) as response:
                if response.is_error:
                    raise ComfyError(
                        f"Failed to fetch {descriptor.filename}", [f"HTTP {response.status_code}"]
                    )
                content_type = response.headers.get("content-type") or guess_content_type(
                    descriptor.filename
                )
                yield response.aiter_bytes(CHUNK_SIZE), content_type
        except httpx.TransportError as e:
            raise ComfyTransportError(f"Failed to fetch {descriptor.filename}", [str(e)]) from e

    def _local_path(self, descriptor: ArtifactDescriptor) -> Path:
        if self._output_dir is None:
            raise ComfyError(
                f"Cannot read {descriptor.filename}", ["No ComfyUI output directory configured"]
            )
        base = self._output_dir.resolve()
        path = (base / descriptor.subfolder / descriptor.filename).resolve()
        if not path.is_relative_to(base):
            logger.warning("Path traversal attempt detected: %s", path)
            raise ComfyError(f"Cannot read {descriptor.filename}", ["Path outside output directory"])
        return path

    # -- Lifecycle ------------------------------------------------------------

    async def close(self) -> None:
        """Release the underlying HTTP connection pool.  Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        await self._http.aclose()
        logger.debug("Closed ComfyUI client %s", self.client_id)

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._http.request(method, url, **kwargs)
        except httpx.TransportError as e:
            logger.error("Cannot reach ComfyUI at %s: %s", self.base_url, e)
            raise ComfyTransportError(
                "Failed to connect to ComfyUI", [f"{self.base_url}: {e}"]
            ) from e
