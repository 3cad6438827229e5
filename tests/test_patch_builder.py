# ABOUTME: Tests for texture patch generation from a labeled adjacency graph
# ABOUTME: Checks patch grouping, cropping, ordering and vertex projection infos

import sys
from pathlib import Path

import numpy as np
import pytest
import trimesh

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from texrecon.adjacency_graph import AdjacencyGraph
from texrecon.errors import ValidationError
from texrecon.patch_builder import find_patch_components, generate_texture_patches
from texrecon.texture_view import TextureView

# Orthographic: world (x, y) -> pixel (40x + 10, 40y + 10)
PROJECTION = np.array([[40.0, 0, 0, 10], [0, 40.0, 0, 10], [0, 0, 0, 1]])


@pytest.fixture
def plane_mesh():
    vertices = np.array([[0, 0, 0], [1, 0, 0], [1, 1, 0], [0, 1, 0]], dtype=np.float64)
    faces = np.array([[0, 1, 2], [0, 2, 3]])
    return trimesh.Trimesh(vertices=vertices, faces=faces, process=False)


@pytest.fixture
def views():
    return [TextureView(i, np.full((64, 64, 3), value, dtype=np.float32), PROJECTION)
            for i, value in enumerate([0.2, 0.6])]


@pytest.fixture
def graph(plane_mesh):
    return AdjacencyGraph.build(plane_mesh, num_views=2)


class TestPatchComponents:
    """Tests for find_patch_components."""

    def test_same_label_forms_one_component(self, graph):
        graph.set_labels([1, 1])
        components = find_patch_components(graph)
        assert len(components) == 1
        assert list(components[0]) == [0, 1]

    def test_different_labels_split(self, graph):
        graph.set_labels([2, 1])
        components = find_patch_components(graph)
        assert [list(c) for c in components] == [[0], [1]]

    def test_untextured_faces_are_skipped(self, graph):
        assert find_patch_components(graph) == []


class TestGenerateTexturePatches:
    """Tests for generate_texture_patches."""

    def test_single_patch_crop(self, graph, plane_mesh, views):
        graph.set_labels([1, 1])
        patches, infos = generate_texture_patches(graph, plane_mesh, views, patch_border=1)

        assert len(patches) == 1
        patch = patches[0]
        assert patch.label == 1
        assert list(patch.faces) == [0, 1]
        assert patch.origin == (9, 9)
        assert (patch.width, patch.height) == (42, 42)
        assert patch.texcoords[0, 0] == pytest.approx([1.0, 1.0])
        assert np.allclose(patch.image, 0.2)

    def test_vertex_infos_for_single_patch(self, graph, plane_mesh, views):
        graph.set_labels([1, 1])
        _, infos = generate_texture_patches(graph, plane_mesh, views)

        assert all(len(vertex_infos) == 1 for vertex_infos in infos)
        assert sorted(infos[0][0].faces) == [0, 1]
        assert infos[1][0].faces == [0]

    def test_seam_vertices_appear_in_both_patches(self, graph, plane_mesh, views):
        graph.set_labels([1, 2])
        patches, infos = generate_texture_patches(graph, plane_mesh, views)

        assert [p.patch_id for p in patches] == [0, 1]
        assert [p.label for p in patches] == [1, 2]
        assert [info.patch_id for info in infos[0]] == [0, 1]
        assert [info.patch_id for info in infos[2]] == [0, 1]
        assert [info.patch_id for info in infos[1]] == [0]
        assert [info.patch_id for info in infos[3]] == [1]
        assert np.allclose(patches[1].image, 0.6)

    def test_label_zero_faces_get_no_patch(self, graph, plane_mesh, views):
        graph.set_labels([0, 2])
        patches, infos = generate_texture_patches(graph, plane_mesh, views)

        assert len(patches) == 1
        assert list(patches[0].faces) == [1]
        assert infos[1] == []

    def test_patches_cover_textured_faces_exactly(self, graph, plane_mesh, views):
        graph.set_labels([2, 1])
        patches, _ = generate_texture_patches(graph, plane_mesh, views)
        covered = sorted(f for p in patches for f in p.faces)
        assert covered == [0, 1]

    def test_order_independent_of_worker_count(self, graph, plane_mesh, views):
        graph.set_labels([2, 1])
        serial, _ = generate_texture_patches(graph, plane_mesh, views, max_workers=1)
        threaded, _ = generate_texture_patches(graph, plane_mesh, views, max_workers=4)

        assert [list(p.faces) for p in serial] == [list(p.faces) for p in threaded]
        assert [p.origin for p in serial] == [p.origin for p in threaded]

    def test_label_without_view_rejected(self, plane_mesh, views):
        graph = AdjacencyGraph.build(plane_mesh, num_views=3)
        graph.set_labels([1, 3])
        with pytest.raises(ValidationError, match="does not exist"):
            generate_texture_patches(graph, plane_mesh, views)

    def test_faces_behind_camera_are_dropped(self, graph, plane_mesh):
        behind = PROJECTION.copy()
        behind[2, 3] = -1.0
        views = [TextureView(0, np.zeros((64, 64, 3)), behind)]
        graph.num_views = 1
        graph.set_labels([1, 1])

        patches, infos = generate_texture_patches(graph, plane_mesh, views)
        assert patches == []
        assert all(len(v) == 0 for v in infos)

    def test_component_split_by_hidden_faces(self):
        # Vertex 4 sits behind the camera, hiding the three faces around it
        vertices = np.array([[0, 0, 0], [0, 1, 0], [1, 0, 0], [1, 1, 0],
                             [2, 0, -2], [2, 1, 0], [3, 0, 0], [3, 1, 0]], dtype=np.float64)
        faces = np.array([[0, 2, 1], [1, 2, 3], [2, 4, 3], [3, 4, 5], [4, 6, 5], [5, 6, 7]])
        mesh = trimesh.Trimesh(vertices=vertices, faces=faces, process=False)
        perspective = np.array([[40.0, 0, 0, 10], [0, 40.0, 0, 10], [0, 0, 1, 1]])
        views = [TextureView(0, np.full((64, 160, 3), 0.5, dtype=np.float32), perspective)]
        graph = AdjacencyGraph.build(mesh, num_views=1)
        graph.set_labels([1] * 6)

        assert len(find_patch_components(graph)) == 1
        patches, infos = generate_texture_patches(graph, mesh, views)

        assert [list(p.faces) for p in patches] == [[0, 1], [5]]
        assert patches[1].origin == (89, 9)
        assert patches[1].width < 50
        assert infos[4] == []
