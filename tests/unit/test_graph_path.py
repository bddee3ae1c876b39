"""Tests for comfygate.core.graph_path: key-path resolution.

Tests cover:
- Splitting well-formed and malformed key-paths.
- Resolving parents through nested mappings.
- Reading and writing fields, including creating absent fields.
- Suffix stripping for mask key-paths.
- Template cloning (deep copy, rejection of empty templates).
"""

from __future__ import annotations

import pytest

from comfygate.core import graph_path
from comfygate.core.errors import GraphResolutionError


class TestSplitKeyPath:
    """Tests for split_key_path."""

    def test_splits_on_delimiter(self):
        """A standard key-path splits into node, inputs and field."""
        assert graph_path.split_key_path("3-inputs-image") == ["3", "inputs", "image"]

    @pytest.mark.parametrize("key_path", ["", "3", "3--image", "-inputs-image", "3-inputs-"])
    def test_rejects_malformed_paths(self, key_path):
        """Empty paths, single segments and empty segments are errors."""
        with pytest.raises(GraphResolutionError) as exc_info:
            graph_path.split_key_path(key_path)
        assert exc_info.value.key_path == key_path


class TestResolveParent:
    """Tests for resolve_parent."""

    def test_returns_inputs_mapping_and_field(self, sample_workflow):
        """The parent of a field is the node's inputs mapping."""
        parent, field_name = graph_path.resolve_parent(sample_workflow, "6-inputs-text")
        assert parent is sample_workflow["6"]["inputs"]
        assert field_name == "text"

    def test_missing_node_raises(self, sample_workflow):
        """An unknown node id cannot be resolved."""
        with pytest.raises(GraphResolutionError, match="'42' not found"):
            graph_path.resolve_parent(sample_workflow, "42-inputs-text")

    def test_non_mapping_segment_raises(self, sample_workflow):
        """Walking into a scalar value is an error."""
        with pytest.raises(GraphResolutionError, match="is not an object"):
            graph_path.resolve_parent(sample_workflow, "6-class_type-foo")

    def test_walking_through_list_raises(self, sample_workflow):
        """Lists are not traversed by key-paths."""
        with pytest.raises(GraphResolutionError):
            graph_path.resolve_parent(sample_workflow, "5-inputs-model-0-x")


class TestGetAndSetField:
    """Tests for get_field and set_field."""

    def test_get_field(self, sample_workflow):
        """get_field returns the current field value."""
        assert graph_path.get_field(sample_workflow, "6-inputs-text") == "a cat"

    def test_get_missing_field_raises(self, sample_workflow):
        """A missing final field is an error for reads."""
        with pytest.raises(GraphResolutionError, match="field 'nope' not found"):
            graph_path.get_field(sample_workflow, "6-inputs-nope")

    def test_set_field_overwrites(self, sample_workflow):
        """set_field replaces an existing value."""
        graph_path.set_field(sample_workflow, "6-inputs-text", "a dog")
        assert sample_workflow["6"]["inputs"]["text"] == "a dog"

    def test_set_field_creates_absent_field(self, sample_workflow):
        """set_field adds a field that does not exist yet."""
        graph_path.set_field(sample_workflow, "6-inputs-weight", 0.5)
        assert sample_workflow["6"]["inputs"]["weight"] == 0.5

    def test_set_field_on_missing_node_raises(self, sample_workflow):
        """set_field never creates nodes."""
        with pytest.raises(GraphResolutionError):
            graph_path.set_field(sample_workflow, "77-inputs-text", "x")
        assert "77" not in sample_workflow


class TestStripSuffix:
    """Tests for strip_suffix."""

    def test_strips_trailing_segment(self):
        """The mask suffix is removed to find the base key-path."""
        assert (
            graph_path.strip_suffix("3-inputs-image-viewcomfymask", "viewcomfymask")
            == "3-inputs-image"
        )

    def test_missing_suffix_raises(self):
        """Paths without the suffix are rejected."""
        with pytest.raises(GraphResolutionError):
            graph_path.strip_suffix("3-inputs-image", "viewcomfymask")


class TestValidateKeyPaths:
    """Tests for validate_key_paths."""

    def test_accepts_resolvable_paths(self, sample_workflow):
        """Valid paths pass, including ones naming new fields."""
        graph_path.validate_key_paths(sample_workflow, ["6-inputs-text", "5-inputs-denoise"])

    def test_reports_first_bad_path(self, sample_workflow):
        """The first unresolvable path is reported."""
        with pytest.raises(GraphResolutionError) as exc_info:
            graph_path.validate_key_paths(
                sample_workflow, ["6-inputs-text", "8-inputs-x", "9-inputs-y"]
            )
        assert exc_info.value.key_path == "8-inputs-x"

    def test_fields_below_inputs_are_not_checked(self, sample_workflow):
        """Paths into fields that do not exist yet are left for apply time."""
        graph_path.validate_key_paths(sample_workflow, ["6-inputs-opts-a", "6-inputs-text-x"])

    def test_missing_second_segment_raises(self, sample_workflow):
        """Deep paths need the node's inputs mapping."""
        with pytest.raises(GraphResolutionError, match="'6-params' not found"):
            graph_path.validate_key_paths(sample_workflow, ["6-params-text"])

    def test_malformed_path_raises(self, sample_workflow):
        """Malformed paths are rejected before any lookup."""
        with pytest.raises(GraphResolutionError, match="Malformed"):
            graph_path.validate_key_paths(sample_workflow, ["6"])


class TestCloneGraph:
    """Tests for clone_graph and iter_nodes."""

    def test_clone_is_deep(self, sample_workflow):
        """Mutating the clone leaves the template untouched."""
        clone = graph_path.clone_graph(sample_workflow)
        clone["6"]["inputs"]["text"] = "changed"
        clone["5"]["inputs"]["model"].append("extra")
        assert sample_workflow["6"]["inputs"]["text"] == "a cat"
        assert sample_workflow["5"]["inputs"]["model"] == ["4", 0]

    @pytest.mark.parametrize("template", [{}, [], None, "workflow"])
    def test_rejects_empty_or_non_mapping(self, template):
        """Empty and non-mapping templates cannot be bound."""
        with pytest.raises(GraphResolutionError):
            graph_path.clone_graph(template)

    def test_iter_nodes_skips_malformed_nodes(self):
        """Nodes without an inputs mapping are skipped."""
        graph = {
            "1": {"class_type": "A", "inputs": {}},
            "2": {"class_type": "B"},
            "3": "not a node",
        }
        assert [node_id for node_id, _ in graph_path.iter_nodes(graph)] == ["1"]
