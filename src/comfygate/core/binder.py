"""Graph Binder: binds per-request inputs into a ComfyUI workflow template.

The binder takes an immutable workflow template plus an ordered list of
:class:`InputDescriptor` values and produces a bound working copy that is
ready to queue, together with a manifest of every file uploaded to the
engine along the way.

Binding Rules
-------------
Inputs are applied one at a time, in order, because a later input may
depend on what an earlier one wrote (the mask protocol reads the base
image name written by its base input).  Per input:

1. ``None`` values are skipped ("no override").
2. Key-paths ending in ``-viewcomfymask`` run the clipspace mask protocol
   against the field at the path minus that suffix.
3. :class:`FilePayload` values are uploaded once; the engine-assigned
   name is written into the field and an :class:`UploadRecord` is kept.
4. Anything else is assigned verbatim.

A finishing pass then walks every node:

- artifact-sink nodes (``SaveImage``, ``VHS_VideoCombine``) get
  ``filename_prefix = "<run id>_"`` so concurrent requests never collide
  on output names;
- every other node has each seed-like field whose value is the
  :data:`UNSET_SEED` sentinel replaced by a fresh random seed.  Any other
  value, including an explicit seed from the caller, is left alone, which
  is how reproducible runs are requested.

Usage
-----
::

    binder = GraphBinder(client)
    graph, uploads = await binder.bind(
        template,
        [InputDescriptor("6-inputs-text", "a goblin workshop"),
         InputDescriptor("3-inputs-image", FilePayload("in.png", data))],
    )
"""

from __future__ import annotations

import copy
import json
import logging
import random
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from comfygate.core import graph_path
from comfygate.core.errors import GraphResolutionError, MaskOrderingError

if TYPE_CHECKING:
    from comfygate.core.comfy_client import ComfyClient

logger = logging.getLogger(__name__)

MASK_SUFFIX = "viewcomfymask"
CLIPSPACE_SUBFOLDER = "clipspace"

# Nodes that write artifacts to the engine's output folder.
ARTIFACT_SINK_CLASSES = frozenset({"SaveImage", "VHS_VideoCombine"})
FILENAME_PREFIX_FIELD = "filename_prefix"

# Substrings identifying seed-like input fields.
SEED_LIKE_INPUT_VALUES = ("seed", "noise_seed", "rand_seed")

# Smallest positive double; the front end writes it to mean "randomize me".
UNSET_SEED = 5e-324

MAX_SEED = 2**32 - 1


@dataclass
class FilePayload:
    """A file value supplied by the caller."""

    name: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass
class InputDescriptor:
    """One ``(key-path, value)`` override for a workflow template.

    Attributes:
        key_path: ``<node id>-inputs-<field>``, optionally suffixed with
            ``-viewcomfymask`` for a mask paired with that field.
        value: Scalar, :class:`FilePayload`, or ``None`` (skipped).
    """

    key_path: str
    value: Any = None

    @property
    def is_mask(self) -> bool:
        return self.key_path.endswith(f"{graph_path.KEY_PATH_DELIMITER}{MASK_SUFFIX}")

    @property
    def is_file(self) -> bool:
        return isinstance(self.value, FilePayload)


@dataclass(frozen=True)
class UploadRecord:
    """Correlates a caller's file input with the name the engine assigned."""

    key_path: str
    original_name: str
    engine_assigned_name: str


def new_seed() -> int:
    """Return a fresh random seed in ComfyUI's accepted range."""
    return random.randint(0, MAX_SEED)


def is_unset_seed(value: Any) -> bool:
    return isinstance(value, float) and value == UNSET_SEED


def clipspace_filename(kind: str, run_id: str) -> str:
    """Name of a clipspace mask-protocol file, e.g. ``clipspace-mask-<id>.png``."""
    return f"clipspace-{kind}-{run_id}.png"


def _file_ref(name: str, subfolder: str = "") -> dict[str, str]:
    # Names bound into the graph may carry the engine subfolder ("sub/x.png").
    if "/" in name and not subfolder:
        subfolder, name = name.rsplit("/", 1)
    return {"filename": name, "subfolder": subfolder, "type": "input"}


class GraphBinder:
    """Binds inputs into one working copy of a workflow template.

    One binder is created per request.  Its run identity namespaces output
    filename prefixes and clipspace mask filenames so that concurrent
    requests never interfere.

    Attributes:
        run_id: Random identifier for this request.
        uploads: Upload manifest of the most recent :meth:`bind` call.
    """

    def __init__(self, client: ComfyClient, run_id: str | None = None) -> None:
        self._client = client
        self.run_id = run_id or str(uuid.uuid4())
        self.uploads: list[UploadRecord] = []
        # key-path -> file bound there in the current batch (for masks).
        self._bound_files: dict[str, FilePayload] = {}

    @property
    def filename_prefix(self) -> str:
        return f"{self.run_id}_"

    async def bind(
        self,
        template: dict[str, Any],
        inputs: Sequence[InputDescriptor],
    ) -> tuple[graph_path.Graph, list[UploadRecord]]:
        """Bind *inputs* into a deep copy of *template*.

        Args:
            template: Workflow graph in ComfyUI API format.  Never mutated.
            inputs: Ordered overrides; later entries for the same key-path
                win.

        Returns:
            Tuple of ``(bound graph, upload manifest)``.

        Node ids (and the ``inputs`` segment of deeper paths) are checked
        against the template before anything is uploaded.  The rest of each
        key-path is resolved when that input is applied, against the graph
        as earlier inputs left it, so ``"6-inputs-opts-a"`` may follow an
        input that wrote a mapping to ``"6-inputs-opts"``.

        Raises:
            GraphResolutionError: A key-path does not match the template or
                the graph built so far.
            MaskOrderingError: A mask input has no file input for its base
                field earlier in *inputs*.
            UploadError: The engine rejected a file.
        """
        graph = graph_path.clone_graph(template)
        self.uploads = []
        self._bound_files = {}

        active = [item for item in inputs if item.value is not None]
        self._validate(graph, active)

        logger.info(
            "Binding %d input(s) into workflow with %d node(s) (run %s)",
            len(active),
            len(graph),
            self.run_id,
        )

        for item in active:
            if item.is_mask:
                if not item.is_file:
                    raise GraphResolutionError(
                        f"Mask input {item.key_path!r} must be a file", key_path=item.key_path
                    )
                await self._upload_mask(graph, item)
            elif item.is_file:
                await self._bind_file(graph, item)
            else:
                graph_path.set_field(graph, item.key_path, copy.deepcopy(item.value))

        self._finalize(graph)
        return graph, list(self.uploads)

    # -- Internals ----------------------------------------------------------

    def _validate(self, graph: graph_path.Graph, inputs: Sequence[InputDescriptor]) -> None:
        """Fail fast on key-paths outside the template and on misordered masks."""
        graph_path.validate_key_paths(
            graph,
            [
                graph_path.strip_suffix(item.key_path, MASK_SUFFIX) if item.is_mask else item.key_path
                for item in inputs
            ],
        )

        file_keys: set[str] = set()
        for item in inputs:
            if item.is_mask:
                base_key = graph_path.strip_suffix(item.key_path, MASK_SUFFIX)
                if base_key not in file_keys:
                    raise MaskOrderingError(
                        "Cannot find the original parameter to map to the mask",
                        key_path=item.key_path,
                        errors=[
                            f"The image input {base_key!r} must be supplied before "
                            f"its mask {item.key_path!r}"
                        ],
                    )
                continue
            if item.is_file:
                file_keys.add(item.key_path)

    async def _bind_file(self, graph: graph_path.Graph, item: InputDescriptor) -> None:
        payload: FilePayload = item.value
        assigned = await self._client.upload_asset(
            payload.content,
            payload.name,
            kind="image",
            overwrite=False,
            content_type=payload.content_type,
        )
        logger.info("Uploaded %s -> %s", payload.name, assigned)

        graph_path.set_field(graph, item.key_path, assigned)
        self._bound_files[item.key_path] = payload
        self.uploads.append(
            UploadRecord(
                key_path=item.key_path,
                original_name=payload.name,
                engine_assigned_name=assigned,
            )
        )

    async def _upload_mask(self, graph: graph_path.Graph, item: InputDescriptor) -> None:
        """Run the clipspace protocol for a mask paired with an image field.

        The engine's mask editor is reference based, so three uploads are
        chained, each naming the asset it layers over:

        1. the mask, referencing the base image;
        2. the base image again as the "painted" layer, referencing the base;
        3. the mask again as "painted-masked", referencing the painted layer.

        The field is then pointed at the painted-masked clipspace asset.
        The order and reference chain must not change.
        """
        base_key = graph_path.strip_suffix(item.key_path, MASK_SUFFIX)
        original = self._bound_files.get(base_key)
        if original is None:
            raise MaskOrderingError(
                "Cannot find the original parameter to map to the mask",
                key_path=item.key_path,
            )

        base_name = graph_path.get_field(graph, base_key)
        mask: FilePayload = item.value
        base_ref = _file_ref(str(base_name))

        mask_name = clipspace_filename("mask", self.run_id)
        await self._client.upload_asset(
            mask.content,
            mask_name,
            kind="mask",
            overwrite=True,
            subfolder=CLIPSPACE_SUBFOLDER,
            original_ref=json.dumps(base_ref),
            content_type="image/png",
        )

        painted_name = clipspace_filename("painted", self.run_id)
        await self._client.upload_asset(
            original.content,
            painted_name,
            kind="image",
            overwrite=True,
            subfolder=CLIPSPACE_SUBFOLDER,
            original_ref=json.dumps(base_ref),
            content_type=original.content_type,
        )

        painted_masked_name = clipspace_filename("painted-masked", self.run_id)
        await self._client.upload_asset(
            mask.content,
            painted_masked_name,
            kind="mask",
            overwrite=True,
            subfolder=CLIPSPACE_SUBFOLDER,
            original_ref=json.dumps(_file_ref(painted_name, CLIPSPACE_SUBFOLDER)),
            content_type="image/png",
        )

        reference = f"{CLIPSPACE_SUBFOLDER}/{painted_masked_name} [input]"
        graph_path.set_field(graph, base_key, reference)
        logger.info("Mask for %s bound as %s", base_key, reference)

    def _finalize(self, graph: graph_path.Graph) -> None:
        for node_id, node in graph_path.iter_nodes(graph):
            inputs = node["inputs"]
            if node.get("class_type") in ARTIFACT_SINK_CLASSES:
                inputs[FILENAME_PREFIX_FIELD] = self.filename_prefix
                continue

            for field_name, value in list(inputs.items()):
                if any(s in field_name for s in SEED_LIKE_INPUT_VALUES) and is_unset_seed(value):
                    inputs[field_name] = new_seed()
                    logger.debug("Node %s: randomized %s = %s", node_id, field_name, inputs[field_name])
