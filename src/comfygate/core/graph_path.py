"""Key-path utilities for ComfyUI workflow graphs.

A workflow graph in ComfyUI API format is a mapping of node ids to nodes::

    {
        "3": {"class_type": "LoadImage", "inputs": {"image": "example.png"}},
        "9": {"class_type": "SaveImage", "inputs": {"filename_prefix": "ComfyUI"}},
    }

Fields are addressed with ``-``-delimited key-paths such as
``"3-inputs-image"``: every segment but the last walks one mapping level,
and the last segment names the field on the resolved parent.

The helpers here never mutate anything except through :func:`set_field`.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable, MutableMapping
from typing import Any

from comfygate.core.errors import GraphResolutionError

KEY_PATH_DELIMITER = "-"

Graph = dict[str, dict[str, Any]]


def split_key_path(key_path: str) -> list[str]:
    """Split a key-path into its segments.

    Args:
        key_path: Path such as ``"3-inputs-image"``.

    Returns:
        List of at least two non-empty segments.

    Raises:
        GraphResolutionError: If the path is empty, has fewer than two
            segments, or contains an empty segment.
    """
    parts = key_path.split(KEY_PATH_DELIMITER) if key_path else []
    if len(parts) < 2 or any(not part for part in parts):
        raise GraphResolutionError(f"Malformed key path: {key_path!r}", key_path=key_path)
    return parts


def resolve_parent(graph: MutableMapping[str, Any], key_path: str) -> tuple[MutableMapping[str, Any], str]:
    """Walk all but the last key-path segment.

    Args:
        graph: The workflow graph to walk.
        key_path: Key-path addressing one field.

    Returns:
        Tuple of ``(parent mapping, final field name)``.

    Raises:
        GraphResolutionError: If a segment does not resolve to a mapping.
    """
    parts = split_key_path(key_path)
    obj: Any = graph
    walked: list[str] = []

    for segment in parts[:-1]:
        walked.append(segment)
        if not isinstance(obj, MutableMapping) or segment not in obj:
            raise GraphResolutionError(
                f"Key path {key_path!r} does not match the workflow: "
                f"{KEY_PATH_DELIMITER.join(walked)!r} not found",
                key_path=key_path,
            )
        obj = obj[segment]

    if not isinstance(obj, MutableMapping):
        raise GraphResolutionError(
            f"Key path {key_path!r} does not match the workflow: "
            f"{KEY_PATH_DELIMITER.join(walked)!r} is not an object",
            key_path=key_path,
        )

    return obj, parts[-1]


def get_field(graph: MutableMapping[str, Any], key_path: str) -> Any:
    """Return the current value of the field at *key_path*.

    Raises:
        GraphResolutionError: If the parent does not resolve or the field
            is missing.
    """
    parent, field_name = resolve_parent(graph, key_path)
    if field_name not in parent:
        raise GraphResolutionError(
            f"Key path {key_path!r} does not match the workflow: field {field_name!r} not found",
            key_path=key_path,
        )
    return parent[field_name]


def set_field(graph: MutableMapping[str, Any], key_path: str, value: Any) -> None:
    """Assign *value* to the field at *key_path*, creating the field if absent."""
    parent, field_name = resolve_parent(graph, key_path)
    parent[field_name] = value


def strip_suffix(key_path: str, suffix: str) -> str:
    """Remove a trailing ``-<suffix>`` segment from *key_path*."""
    tail = f"{KEY_PATH_DELIMITER}{suffix}"
    if not key_path.endswith(tail):
        raise GraphResolutionError(
            f"Key path {key_path!r} does not end with {tail!r}", key_path=key_path
        )
    return key_path[: -len(tail)]


def validate_key_paths(graph: MutableMapping[str, Any], key_paths: Iterable[str]) -> None:
    """Check that every key-path addresses an existing node of *graph*.

    Used once at the start of a batch so that a mismatched request fails
    before any upload is made.  Only the template-owned prefix is checked:
    the node id, and for deeper paths the node's second segment (normally
    ``inputs``).  Anything below that may be written by an earlier input of
    the same batch, so it is resolved when the input is applied.

    Raises:
        GraphResolutionError: For the first key-path that does not match.
    """
    for key_path in key_paths:
        parts = split_key_path(key_path)
        node = graph.get(parts[0])
        if not isinstance(node, MutableMapping):
            raise GraphResolutionError(
                f"Key path {key_path!r} does not match the workflow: {parts[0]!r} not found",
                key_path=key_path,
            )
        if len(parts) > 2 and not isinstance(node.get(parts[1]), MutableMapping):
            raise GraphResolutionError(
                f"Key path {key_path!r} does not match the workflow: "
                f"{KEY_PATH_DELIMITER.join(parts[:2])!r} not found",
                key_path=key_path,
            )


def clone_graph(template: MutableMapping[str, Any]) -> Graph:
    """Return a deep working copy of a workflow template.

    Raises:
        GraphResolutionError: If the template is empty or not a mapping.
    """
    if not isinstance(template, MutableMapping) or not template:
        raise GraphResolutionError("Workflow template must be a non-empty object")
    return copy.deepcopy(dict(template))


def iter_nodes(graph: MutableMapping[str, Any]):
    """Yield ``(node_id, node)`` for every well-formed node in *graph*."""
    for node_id, node in graph.items():
        if isinstance(node, MutableMapping) and isinstance(node.get("inputs"), MutableMapping):
            yield node_id, node
