"""Default workflow template storage (``view_comfy.json``).

Requests that do not carry their own workflow fall back to the template
saved in ``view_comfy.json``.  The file holds a list of workflow entries;
the first entry with a ``workflowApiJSON`` key supplies the template::

    {"workflows": [{"viewComfyJSON": {...}, "workflowApiJSON": {"3": {...}}}]}
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from comfygate.core.errors import ComfyError, WorkflowConfigurationError

logger = logging.getLogger(__name__)

MISSING_VIEW_COMFY_FILE_ERROR = (
    "The view_comfy.json file is missing or invalid. Save a workflow from the "
    "playground to create it."
)


def load_default_workflow(path: Path) -> dict[str, Any]:
    """Return the first ``workflowApiJSON`` stored in *path*.

    Raises:
        ComfyError: The file is missing or is not valid JSON.
        WorkflowConfigurationError: No entry has a ``workflowApiJSON``.
    """
    try:
        with open(path, encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, ValueError) as e:
        logger.error("Cannot read %s: %s", path, e)
        raise ComfyError("Failed to launch ComfyUI", [MISSING_VIEW_COMFY_FILE_ERROR]) from e

    workflows = data.get("workflows") if isinstance(data, dict) else None
    for entry in workflows or []:
        if isinstance(entry, dict) and isinstance(entry.get("workflowApiJSON"), dict):
            return entry["workflowApiJSON"]

    raise WorkflowConfigurationError(
        "Failed to find workflowApiJSON", ["Failed to find workflowApiJSON"]
    )


def save_view_comfy(path: Path, data: dict[str, Any]) -> Path:
    """Persist *data* as ``view_comfy.json`` with 2-space indentation.

    Returns:
        The path written.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(data, handle, indent=2)
    logger.info("Saved %s", path)
    return path
