"""Execution Gateway: runs a bound graph and streams every artifact back.

:class:`ExecutionGateway` submits a bound workflow to ComfyUI, learns which
artifacts the run produced, and returns them as a single lazily generated
byte stream in the format described in :mod:`comfygate.core.framing`.

Memory Model
------------
Artifacts are fetched one at a time and forwarded chunk by chunk as the
stream is consumed, so the gateway never holds more than one chunk of
artifact data at a time regardless of how many or how large the outputs
are.

Failure Handling
----------------
- Zero reported artifacts is a :class:`WorkflowConfigurationError` (the
  template has no save node), never an empty successful stream.
- Engine failures surface as :class:`ComfyExecutionError`; anything that is
  not already a :class:`ComfyError` is replaced by the generic execution
  error.
- A fetch that fails before its frame header is sent is logged and that
  artifact is skipped.  A fetch that fails after the header (the engine
  drops the connection mid-body) is logged too, and the frame is closed
  with the separator as it stands, so its content may be truncated.  The
  remaining artifacts are still streamed either way.
- The engine client is closed exactly once on every exit path: on a failed
  submission before ``execute`` raises, otherwise when the stream finishes,
  fails, or is closed early by the consumer.

Usage
-----
::

    client = ComfyClient.from_config(config)
    result = await run_workflow(client, template, inputs)
    first = result.artifacts[0].view_path()
    async for chunk in result.stream:
        ...
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from comfygate.core.binder import GraphBinder, InputDescriptor, UploadRecord
from comfygate.core.comfy_client import ArtifactDescriptor, ComfyClient
from comfygate.core.errors import (
    NO_OUTPUTS_DETAIL,
    ComfyError,
    WorkflowConfigurationError,
    generic_execution_error,
)
from comfygate.core.framing import SEPARATOR, frame_header

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """Everything a caller needs from one bound-and-executed workflow.

    ``artifacts`` and ``uploads`` are available before the stream is
    consumed, so a history collaborator can record what was produced
    without waiting for the transfer.
    """

    stream: AsyncIterator[bytes]
    artifacts: list[ArtifactDescriptor]
    uploads: list[UploadRecord]
    run_id: str
    graph: dict[str, Any] = field(repr=False, default_factory=dict)


class ExecutionGateway:
    """Submits bound graphs and frames their artifacts into one stream."""

    def __init__(self, client: ComfyClient) -> None:
        self._client = client
        self._released = False

    async def execute(
        self,
        graph: dict[str, Any],
        *,
        text_output_enabled: bool = False,
    ) -> tuple[AsyncIterator[bytes], list[ArtifactDescriptor]]:
        """Run *graph* and return ``(byte stream, artifact descriptors)``.

        Args:
            graph: Bound workflow graph.
            text_output_enabled: Include plain text outputs as artifacts.

        Raises:
            WorkflowConfigurationError: The run produced no artifacts.
            ComfyExecutionError: The engine rejected or failed the graph.
            ComfyTransportError: The engine could not be reached.
        """
        try:
            artifacts = await self._client.submit_graph(
                graph, text_output_enabled=text_output_enabled
            )
            if not artifacts:
                raise WorkflowConfigurationError("No output files found", [NO_OUTPUTS_DETAIL])
        except ComfyError:
            logger.error("Failed to run the workflow", exc_info=True)
            await self._release()
            raise
        except Exception as e:
            logger.error("Failed to run the workflow: %s", e, exc_info=True)
            await self._release()
            raise generic_execution_error() from e

        return self._stream(artifacts), artifacts

    async def _stream(self, artifacts: Sequence[ArtifactDescriptor]) -> AsyncIterator[bytes]:
        """Yield one frame per artifact, then release the client.

        A frame whose body fails mid-transfer still ends with the separator,
        so its content is whatever arrived before the failure (possibly
        nothing).  Consumers cannot tell such a frame from a short artifact;
        the failure is only visible in the log.
        """
        try:
            for descriptor in artifacts:
                header_sent = False
                try:
                    async with self._client.fetch_artifact(descriptor) as (chunks, content_type):
                        yield frame_header(content_type, descriptor.filename)
                        header_sent = True
                        async for chunk in chunks:
                            if chunk:
                                yield chunk
                    yield SEPARATOR
                except (ComfyError, httpx.HTTPError, OSError):
                    logger.exception("Failed to get output file %s", descriptor.filename)
                    # Terminate a partially written frame so consumers can still split.
                    if header_sent:
                        yield SEPARATOR
        finally:
            await self._release()

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True
        await self._client.close()


async def run_workflow(
    client: ComfyClient,
    template: dict[str, Any],
    inputs: Sequence[InputDescriptor],
    *,
    text_output_enabled: bool = False,
    run_id: str | None = None,
) -> RunResult:
    """Bind *inputs* into *template* and execute it with a fresh gateway.

    The client is owned by the run from here on: it is closed if binding
    fails, and otherwise by the gateway.

    Raises:
        ComfyError: Any binding or execution failure.
    """
    binder = GraphBinder(client, run_id=run_id)
    try:
        graph, uploads = await binder.bind(template, inputs)
    except Exception:
        await client.close()
        raise

    gateway = ExecutionGateway(client)
    stream, artifacts = await gateway.execute(graph, text_output_enabled=text_output_enabled)
    return RunResult(
        stream=stream,
        artifacts=artifacts,
        uploads=uploads,
        run_id=binder.run_id,
        graph=graph,
    )
