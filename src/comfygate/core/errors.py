"""Error taxonomy for binding and executing ComfyUI workflows.

Every error raised by this package derives from :class:`ComfyError`, which
carries a human-readable ``message`` plus a list of detail strings
(``errors``) that the API layer passes through verbatim so callers can
render actionable detail (missing custom nodes, out-of-memory, ...).

Hierarchy
---------
ComfyError
    GraphResolutionError
        MaskOrderingError
    UploadError
    WorkflowConfigurationError
    ComfyExecutionError
    ComfyTransportError

Only :class:`ComfyExecutionError` has a generic fallback
(:func:`generic_execution_error`) for engine payloads that cannot be
parsed; every other kind carries its specific cause.
"""

from __future__ import annotations

from typing import Any

GENERIC_EXECUTION_MESSAGE = "Error running workflow"
GENERIC_EXECUTION_DETAIL = (
    "Something went wrong running the workflow, the most common cases are missing "
    "nodes and running out of Vram. Make sure that you can run this workflow in "
    "your local comfy"
)
NO_OUTPUTS_DETAIL = (
    "Make sure your workflow contains at least one node that saves an output to "
    'the ComfyUI output folder. eg. "Save Image" or "Video Combine" from '
    "comfyui-videohelpersuite"
)


class ComfyError(Exception):
    """Base error with a message and a list of detail strings."""

    error_type = "comfy_error"

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.errors: list[str] = list(errors or [])

    def to_dict(self) -> dict[str, Any]:
        """Serialise the error for an API response body."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "errors": self.errors,
        }


class GraphResolutionError(ComfyError):
    """A key-path does not match the structure of the workflow graph.

    Signals a mismatch between the caller's inputs and the template; not
    retryable without fixing the request.
    """

    error_type = "resolution_error"

    def __init__(self, message: str, key_path: str | None = None, errors: list[str] | None = None):
        super().__init__(message, errors)
        self.key_path = key_path


class MaskOrderingError(GraphResolutionError):
    """A mask input was supplied without its base image input before it."""

    error_type = "mask_ordering_error"


class UploadError(ComfyError):
    """The engine rejected an uploaded asset."""

    error_type = "upload_error"


class WorkflowConfigurationError(ComfyError):
    """The workflow cannot produce artifacts (e.g. no save node)."""

    error_type = "configuration_error"


class ComfyExecutionError(ComfyError):
    """The engine accepted the graph but rejected or failed executing it."""

    error_type = "execution_error"


class ComfyTransportError(ComfyError):
    """The engine could not be reached."""

    error_type = "transport_error"


def generic_execution_error() -> ComfyExecutionError:
    """Return the fallback error used when an engine failure is unparseable."""
    return ComfyExecutionError(GENERIC_EXECUTION_MESSAGE, [GENERIC_EXECUTION_DETAIL])


def parse_prompt_error(payload: Any) -> ComfyExecutionError | None:
    """Parse the body ComfyUI returns when ``POST /prompt`` is rejected.

    The engine answers validation failures with::

        {"error": {"type": ..., "message": ..., "details": ...},
         "node_errors": {"<node id>": {"class_type": ...,
                                      "errors": [{"message": ..., "details": ...}]}}}

    Args:
        payload: Decoded JSON body (any shape).

    Returns:
        A :class:`ComfyExecutionError`, or ``None`` if the payload does not
        look like a ComfyUI error.
    """
    if not isinstance(payload, dict):
        return None

    error = payload.get("error")
    if isinstance(error, str):
        return ComfyExecutionError(error)
    if not isinstance(error, dict) or not error.get("message"):
        return None

    errors: list[str] = []
    if error.get("details"):
        errors.append(str(error["details"]))

    node_errors = payload.get("node_errors")
    if isinstance(node_errors, dict):
        for node_id, node_error in node_errors.items():
            if not isinstance(node_error, dict):
                continue
            class_type = node_error.get("class_type", "unknown")
            for item in node_error.get("errors") or []:
                if not isinstance(item, dict):
                    continue
                text = item.get("message", "")
                if item.get("details"):
                    text = f"{text}: {item['details']}"
                errors.append(f"Node {node_id} ({class_type}): {text}")

    return ComfyExecutionError(str(error["message"]), errors)


def parse_execution_error(status: Any) -> ComfyExecutionError | None:
    """Parse the ``status`` block of a failed ``/history`` entry.

    ComfyUI records failures as ``["execution_error", {...}]`` pairs in
    ``status["messages"]``.

    Args:
        status: The history entry's ``status`` value.

    Returns:
        A :class:`ComfyExecutionError`, or ``None`` if no execution error
        message is present.
    """
    if not isinstance(status, dict):
        return None

    for message in status.get("messages") or []:
        if not isinstance(message, (list, tuple)) or len(message) != 2:
            continue
        event, data = message
        if event != "execution_error" or not isinstance(data, dict):
            continue
        text = data.get("exception_message") or GENERIC_EXECUTION_MESSAGE
        errors = []
        if data.get("node_type"):
            errors.append(f"Node {data.get('node_id', '?')} ({data['node_type']}) failed")
        if data.get("exception_type"):
            errors.append(str(data["exception_type"]))
        return ComfyExecutionError(str(text).strip(), errors)

    return None
