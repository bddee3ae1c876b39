"""Comfygate: FastAPI Application.

This module defines the FastAPI ``app`` instance, the REST routes, and the
``main()`` CLI function that launches the uvicorn server.

Architecture
------------
The application is stateless between requests:

- **Each request** gets its own :class:`~comfygate.core.comfy_client.ComfyClient`
  (via the ``get_comfy_client`` dependency), its own binder and its own
  gateway.  Nothing request-scoped is shared at module level.
- **Workflow templates** arrive with the request or fall back to
  ``view_comfy.json``.
- **Generated artifacts** are streamed back in a single framed response
  body (see :mod:`comfygate.core.framing`) as ComfyUI delivers them.

Endpoints
---------
========  ==========================  ====================================
Method    Path                        Purpose
========  ==========================  ====================================
GET       ``/api/health``             Liveness and version
POST      ``/api/comfy``              Bind, run, and stream a workflow
POST      ``/api/playground/save``    Persist ``view_comfy.json``
========  ==========================  ====================================

Usage
-----
CLI (installed entry point)::

    comfygate

Direct invocation::

    python -m comfygate.api.main
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from comfygate import __version__
from comfygate.api.models import ErrorResponse, PlaygroundSaveRequest, ViewComfyPayload
from comfygate.core.binder import FilePayload, InputDescriptor
from comfygate.core.comfy_client import DEFAULT_CONTENT_TYPE, ComfyClient
from comfygate.core.config import ComfygateConfig, config
from comfygate.core.errors import ComfyError, GraphResolutionError
from comfygate.core.framing import STREAM_FILENAME, STREAM_MEDIA_TYPE
from comfygate.core.gateway import run_workflow
from comfygate.core.workflow_store import load_default_workflow, save_view_comfy

logger = logging.getLogger(__name__)

# Form field values that mean "not supplied".
_ABSENT_FIELD_VALUES = ("", "undefined", "null")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Log the engine the application will talk to."""
    logger.info("Comfygate %s using ComfyUI at %s", __version__, config.comfy_base_url)
    yield
    logger.info("Comfygate shutting down.")


app = FastAPI(
    title="Comfygate",
    description="Bind inputs into ComfyUI workflows and stream every generated artifact.",
    version=__version__,
    lifespan=lifespan,
)

# Allow cross-origin requests so the frontend can be served from a different
# port during development.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "X-Comfygate-Run-Id", "X-Comfygate-Artifacts"],
)


# ---------------------------------------------------------------------------
# Dependencies.
# ---------------------------------------------------------------------------


def get_config() -> ComfygateConfig:
    """Return the application configuration."""
    return config


def get_comfy_client(cfg: ComfygateConfig = Depends(get_config)) -> ComfyClient:
    """Build a fresh engine client for one request.

    The client is handed to the run, which closes it when the response
    stream ends or the run fails.
    """
    return ComfyClient.from_config(cfg)


# ---------------------------------------------------------------------------
# Helpers.
# ---------------------------------------------------------------------------


def _parse_json_field(raw: Any, field_name: str) -> Any | None:
    """Decode a JSON-encoded form field, treating absent markers as ``None``.

    Raises:
        HTTPException: 400 if the field is present but not valid JSON.
    """
    if raw is None or not isinstance(raw, str) or raw.strip() in _ABSENT_FIELD_VALUES:
        return None
    try:
        return json.loads(raw)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"{field_name} is not valid JSON") from e


def _error_response(error: ComfyError, status_code: int = 500) -> JSONResponse:
    body = ErrorResponse(**error.to_dict())
    return JSONResponse(body.model_dump(), status_code=status_code)


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------


@app.get("/api/health")
async def health() -> dict:
    """Return liveness status and the API version."""
    return {"status": "ok", "version": __version__}


@app.post("/api/comfy")
async def run_comfy(
    request: Request,
    cfg: ComfygateConfig = Depends(get_config),
    client: ComfyClient = Depends(get_comfy_client),
):
    """Bind the request's inputs into a workflow, run it, and stream the outputs.

    The multipart form may contain:

    - ``workflow``: JSON workflow in ComfyUI API format.  Optional; the
      template from ``view_comfy.json`` is used when absent.
    - ``viewComfy``: JSON ``{"inputs": [{"key", "value"}], "textOutputEnabled"}``.
    - Any number of file fields named by key-path (``"3-inputs-image"``,
      ``"3-inputs-image-viewcomfymask"``), applied after the JSON inputs in
      form order.

    Returns:
        ``application/octet-stream`` framed body with every artifact.  On
        failure, an :class:`ErrorResponse` with status 400 (inputs do not
        match the workflow) or 500 (everything else).
    """
    try:
        form = await request.form()
        workflow = _parse_json_field(form.get("workflow"), "workflow")
        view_comfy = _parse_json_field(form.get("viewComfy"), "viewComfy")
        try:
            payload = ViewComfyPayload.model_validate(view_comfy or {})
        except ValidationError as e:
            raise HTTPException(status_code=400, detail="viewComfy has an invalid shape") from e

        inputs = [InputDescriptor(item.key, item.value) for item in payload.inputs]
        for key, value in form.multi_items():
            if key in ("workflow", "viewComfy") or isinstance(value, str):
                continue
            content = await value.read()
            logger.info("Receiving file - Key: %s, Name: %s, Size: %d", key, value.filename, len(content))
            inputs.append(
                InputDescriptor(
                    key,
                    FilePayload(
                        name=value.filename or key,
                        content=content,
                        content_type=value.content_type or DEFAULT_CONTENT_TYPE,
                    ),
                )
            )

        template = workflow if workflow is not None else load_default_workflow(cfg.view_comfy_file)
    except HTTPException:
        await client.close()
        raise
    except ComfyError as e:
        await client.close()
        logger.error("Cannot prepare the run: %s %s", e.message, e.errors)
        return _error_response(e)

    # From here on the run owns the client and closes it on every path.
    try:
        result = await run_workflow(
            client, template, inputs, text_output_enabled=payload.text_output_enabled
        )
    except GraphResolutionError as e:
        logger.warning("Inputs do not match the workflow: %s", e.message)
        return _error_response(e, status_code=400)
    except ComfyError as e:
        logger.error("Run failed: %s %s", e.message, e.errors)
        return _error_response(e)

    logger.info(
        "Run %s: %d artifact(s), first %s; uploads %s",
        result.run_id,
        len(result.artifacts),
        result.artifacts[0].view_path(),
        [(u.key_path, u.engine_assigned_name) for u in result.uploads],
    )

    return StreamingResponse(
        result.stream,
        media_type=STREAM_MEDIA_TYPE,
        headers={
            "Content-Disposition": f'attachment; filename="{STREAM_FILENAME}"',
            "X-Comfygate-Run-Id": result.run_id,
            "X-Comfygate-Artifacts": str(len(result.artifacts)),
        },
    )


@app.post("/api/playground/save")
async def save_playground(
    req: PlaygroundSaveRequest,
    cfg: ComfygateConfig = Depends(get_config),
) -> dict:
    """Persist a ``view_comfy.json`` document as the default template source.

    Raises:
        HTTPException: 400 when ``viewComfyJSON`` is missing, 500 when the
            file cannot be written.
    """
    if not req.view_comfy_json:
        raise HTTPException(status_code=400, detail="viewComfyJSON is required")

    try:
        path = save_view_comfy(cfg.view_comfy_file, req.view_comfy_json)
    except OSError as e:
        logger.error("Error saving %s: %s", cfg.view_comfy_file, e)
        raise HTTPException(status_code=500, detail=f"Failed to save file: {e}") from e

    return {"success": True, "message": f"Saved to {path.name}", "path": str(path)}


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port, and log level from :data:`~comfygate.core.config.config`
    (``COMFYGATE_SERVER_HOST``, ``COMFYGATE_SERVER_PORT``,
    ``COMFYGATE_LOG_LEVEL``).  Defaults to ``0.0.0.0:7860``.
    """
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    uvicorn.run(
        "comfygate.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
