# ABOUTME: Tests for global and local seam leveling and validity masks
# ABOUTME: Uses two patches of different brightness meeting along one seam

import sys
from pathlib import Path

import numpy as np
import pytest
import trimesh

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import texrecon.seam_leveling as seam_leveling
from texrecon.adjacency_graph import AdjacencyGraph
from texrecon.errors import NumericalError
from texrecon.linear_solver import solve_sparse_system
from texrecon.mesh_info import VertexInfoList
from texrecon.patch_builder import generate_texture_patches
from texrecon.seam_leveling import (calculate_validity_masks, global_seam_leveling,
                                    local_seam_leveling)
from texrecon.texture_view import TextureView

PROJECTION = np.array([[40.0, 0, 0, 10], [0, 40.0, 0, 10], [0, 0, 0, 1]])


def _views():
    return [TextureView(i, np.full((64, 64, 3), value, dtype=np.float32), PROJECTION)
            for i, value in enumerate([0.2, 0.6])]


@pytest.fixture
def plane_mesh():
    vertices = np.array([[0, 0, 0], [1, 0, 0], [1, 1, 0], [0, 1, 0]], dtype=np.float64)
    faces = np.array([[0, 1, 2], [0, 2, 3]])
    return trimesh.Trimesh(vertices=vertices, faces=faces, process=False)


@pytest.fixture
def seam_scene(plane_mesh):
    """Face 0 textured from the dark view, face 1 from the bright one."""
    graph = AdjacencyGraph.build(plane_mesh, num_views=2)
    graph.set_labels([1, 2])
    vertex_infos = VertexInfoList.create(plane_mesh)
    patches, projection_infos = generate_texture_patches(graph, plane_mesh, _views())
    return graph, plane_mesh, vertex_infos, projection_infos, patches


def _vertex_colors(patches, projection_infos, vertex):
    return [patches[info.patch_id].sample(info.projection[None])[0]
            for info in projection_infos[vertex]]


class TestGlobalSeamLeveling:
    """Tests for global_seam_leveling."""

    def test_seam_differences_vanish(self, seam_scene):
        report = global_seam_leveling(*seam_scene)

        assert list(report.seam_vertices) == [0, 2]
        assert report.difference_before == pytest.approx([0.4, 0.4], abs=1e-6)
        assert report.max_difference_after < 1e-4
        assert np.all(report.difference_after <= report.difference_before)
        assert report.failed_components == []

    def test_patch_pixels_meet_at_seam(self, seam_scene):
        _, _, _, projection_infos, patches = seam_scene
        global_seam_leveling(*seam_scene)

        dark, bright = _vertex_colors(patches, projection_infos, 0)
        assert np.abs(dark - bright).max() < 1e-3
        assert dark[0] > 0.2
        assert bright[0] < 0.6

    def test_report_matches_patch_pixels(self, seam_scene):
        _, _, _, projection_infos, patches = seam_scene
        report = global_seam_leveling(*seam_scene)

        for vertex, difference in zip(report.seam_vertices, report.difference_after):
            dark, bright = _vertex_colors(patches, projection_infos, vertex)
            assert difference == pytest.approx(np.abs(dark - bright).max(), abs=1e-9)

    def test_clamp_holds_seam_open(self, seam_scene):
        _, _, _, projection_infos, patches = seam_scene
        report = global_seam_leveling(*seam_scene, color_clamp=0.05)

        assert np.allclose(patches[0].image, 0.25, atol=1e-6)
        assert np.allclose(patches[1].image, 0.55, atol=1e-6)
        assert report.difference_after == pytest.approx([0.3, 0.3], abs=1e-5)
        dark, bright = _vertex_colors(patches, projection_infos, 0)
        assert np.abs(dark - bright).max() == pytest.approx(report.difference_after[0], abs=1e-9)

    def test_validity_masks_are_set(self, seam_scene):
        patches = seam_scene[-1]
        global_seam_leveling(*seam_scene)
        assert all(p.validity_mask is not None and p.validity_mask.any() for p in patches)

    def test_direct_solver_matches_cg(self, plane_mesh):
        def run(solver):
            graph = AdjacencyGraph.build(plane_mesh, num_views=2)
            graph.set_labels([1, 2])
            patches, infos = generate_texture_patches(graph, plane_mesh, _views())
            global_seam_leveling(graph, plane_mesh, VertexInfoList.create(plane_mesh),
                                 infos, patches, solver=solver, tolerance=1e-10)
            return patches

        for cg_patch, direct_patch in zip(run('cg'), run('direct')):
            assert np.allclose(cg_patch.image, direct_patch.image, atol=1e-4)

    def test_failed_component_keeps_colors(self, seam_scene, monkeypatch):
        def failing_solve(*args, **kwargs):
            raise NumericalError("did not converge", iterations=3)

        monkeypatch.setattr(seam_leveling, 'solve_sparse_system', failing_solve)
        patches = seam_scene[-1]
        report = global_seam_leveling(*seam_scene)

        assert report.failed_components == [0]
        assert report.difference_after == pytest.approx(report.difference_before)
        assert np.allclose(patches[0].image, 0.2)
        assert np.allclose(patches[1].image, 0.6)
        assert patches[0].validity_mask is not None

    def test_single_patch_has_no_seams(self, plane_mesh):
        graph = AdjacencyGraph.build(plane_mesh, num_views=2)
        graph.set_labels([2, 2])
        patches, infos = generate_texture_patches(graph, plane_mesh, _views())

        report = global_seam_leveling(graph, plane_mesh, VertexInfoList.create(plane_mesh),
                                      infos, patches)
        assert len(report.seam_vertices) == 0
        assert np.allclose(patches[0].image, 0.6)

    def test_complex_vertices_are_not_tied(self):
        vertices = np.array([[0, 0, 0], [1, 0, 0], [0.5, 1, 0], [0.5, 0.5, 1], [0.5, 0.8, -1]],
                            dtype=np.float64)
        faces = np.array([[0, 1, 2], [1, 0, 3], [0, 1, 4]])
        mesh = trimesh.Trimesh(vertices=vertices, faces=faces, process=False)
        graph = AdjacencyGraph.build(mesh, num_views=2)
        graph.set_labels([1, 2, 1])
        infos = VertexInfoList.create(mesh)
        patches, projection_infos = generate_texture_patches(graph, mesh, _views())

        assert len(projection_infos[0]) == 2
        report = global_seam_leveling(graph, mesh, infos, projection_infos, patches)
        assert len(report.seam_vertices) == 0


class TestValidityMasks:
    """Tests for calculate_validity_masks."""

    def test_masks_without_color_change(self, seam_scene):
        patches = seam_scene[-1]
        calculate_validity_masks(patches, border=2, max_workers=2)

        for patch, value in zip(patches, [0.2, 0.6]):
            assert patch.validity_mask.shape == (patch.height, patch.width)
            assert patch.validity_mask.any()
            assert np.allclose(patch.image, value)


class TestLocalSeamLeveling:
    """Tests for local_seam_leveling."""

    def test_blending_reduces_seam_difference(self, seam_scene):
        graph, mesh, _, projection_infos, patches = seam_scene
        report = local_seam_leveling(graph, mesh, projection_infos, patches, blend_radius=8.0)

        assert list(report.seam_vertices) == [0, 2]
        assert report.max_difference_after < 0.1
        assert np.all(report.difference_after < report.difference_before)

    def test_far_pixels_untouched(self, seam_scene):
        graph, mesh, _, projection_infos, patches = seam_scene
        local_seam_leveling(graph, mesh, projection_infos, patches, blend_radius=4.0)

        # Pixel near vertex 1, far from both seam vertices
        assert patches[0].image[2, 38, 0] == pytest.approx(0.2)
        assert patches[0].image[1, 1, 0] > 0.2

    def test_zero_radius_is_noop(self, seam_scene):
        graph, mesh, _, projection_infos, patches = seam_scene
        local_seam_leveling(graph, mesh, projection_infos, patches, blend_radius=0.0)
        assert np.allclose(patches[0].image, 0.2)


class TestLinearSolver:
    """Tests for solve_sparse_system."""

    def test_cg_and_direct_agree(self):
        from scipy.sparse import diags
        matrix = diags([[-1.0] * 4, [4.0] * 5, [-1.0] * 4], [-1, 0, 1]).tocsr()
        rhs = np.arange(10, dtype=np.float64).reshape(5, 2)

        cg = solve_sparse_system(matrix, rhs, tolerance=1e-12)
        direct = solve_sparse_system(matrix, rhs, method='direct')
        assert cg.shape == (5, 2)
        assert cg == pytest.approx(direct, abs=1e-8)
        assert matrix @ direct == pytest.approx(rhs)

    def test_non_convergence_raises(self):
        from scipy.sparse import diags
        matrix = diags([[-1.0] * 49, [2.001] * 50, [-1.0] * 49], [-1, 0, 1]).tocsr()
        with pytest.raises(NumericalError):
            solve_sparse_system(matrix, np.ones(50), tolerance=1e-12, max_iterations=2)

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="Unknown solver method"):
            solve_sparse_system(np.eye(2), np.ones(2), method='lu')
