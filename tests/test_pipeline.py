"""
Tests for the texturing pipeline orchestrator.
"""

import csv
import sys
from pathlib import Path

import numpy as np
import pytest
import trimesh

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from texrecon.data_costs import DataCostTable, save_data_costs
from texrecon.errors import ValidationError
from texrecon.labeling import load_labeling, save_labeling
from texrecon.pipeline import Pipeline, PipelineConfig
from texrecon.texture_view import TextureView
from texrecon.utils.logging_utils import Timer, TimingStats, ProgressCounter, setup_logging

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
def split_costs():
    """Each face strongly prefers a different view."""
    return DataCostTable.from_dense(np.array([[0.0, 5.0], [5.0, 0.0]]))


class TestPipelineConfig:
    """Tests for PipelineConfig dataclass."""

    def test_defaults(self):
        config = PipelineConfig()
        assert config.smoothness == 1.0
        assert config.weight_policy == 'uniform'
        assert config.global_seam_leveling
        assert config.local_seam_leveling
        assert config.max_workers is None

    def test_negative_smoothness(self):
        with pytest.raises(ValueError, match="smoothness must be non-negative"):
            PipelineConfig(smoothness=-0.5)

    def test_invalid_weight_policy(self):
        with pytest.raises(ValueError, match="Invalid weight policy"):
            PipelineConfig(weight_policy='area')

    def test_invalid_solver(self):
        with pytest.raises(ValueError, match="Invalid solver method"):
            PipelineConfig(solver_method='multigrid')

    def test_invalid_worker_count(self):
        with pytest.raises(ValueError, match="max_workers"):
            PipelineConfig(max_workers=0)

    def test_regularization_must_be_positive(self):
        with pytest.raises(ValueError, match="correction_regularization"):
            PipelineConfig(correction_regularization=0.0)

    def test_missing_labeling_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            PipelineConfig(labeling_file=tmp_path / "missing.vec")

    def test_outputs_need_prefix(self):
        with pytest.raises(ValueError, match="out_prefix"):
            PipelineConfig(write_timings=True)

    def test_paths_converted(self, tmp_path):
        config = PipelineConfig(out_prefix=str(tmp_path / "scene"))
        assert config.out_prefix == tmp_path / "scene"
        assert config.output_path('_labeling.vec') == tmp_path / "scene_labeling.vec"


class TestPipelineRun:
    """Tests for Pipeline.run."""

    def test_full_run(self, plane_mesh, views, split_costs):
        result = Pipeline(PipelineConfig(smoothness=0.0)).run(plane_mesh, views, split_costs)

        assert list(result.labels) == [1, 2]
        assert len(result.patches) == 2
        assert result.selection is not None
        assert result.global_report.max_difference_after < 1e-4
        assert result.local_report is not None
        assert [s.name for s in result.timing_stats] == [
            "Mesh preparation", "View selection", "Texture patch generation", "Seam leveling"]

    def test_smoothness_merges_patches(self, plane_mesh, views, split_costs):
        result = Pipeline(PipelineConfig(smoothness=10.0)).run(plane_mesh, views, split_costs)
        assert list(result.labels) == [1, 1]
        assert len(result.patches) == 1

    def test_validity_masks_when_global_disabled(self, plane_mesh, views, split_costs):
        config = PipelineConfig(smoothness=0.0, global_seam_leveling=False,
                                local_seam_leveling=False)
        result = Pipeline(config).run(plane_mesh, views, split_costs)

        assert result.global_report is None
        assert result.local_report is None
        assert all(p.validity_mask is not None for p in result.patches)
        assert np.allclose(result.patches[0].image, 0.2)

    def test_intermediate_results_written(self, plane_mesh, views, split_costs, tmp_path):
        config = PipelineConfig(smoothness=0.0, out_prefix=tmp_path / "out" / "scene",
                                write_intermediate_results=True, write_timings=True)
        result = Pipeline(config).run(plane_mesh, views, split_costs)

        labeling_path = tmp_path / "out" / "scene_labeling.vec"
        timings_path = tmp_path / "out" / "scene_timings.csv"
        assert (tmp_path / "out" / "scene_data_costs.spt").exists()
        assert list(load_labeling(labeling_path)) == [1, 2]
        assert timings_path in result.output_files

        with open(timings_path, newline='') as f:
            rows = list(csv.reader(f))
        assert rows[0] == ['stage', 'substep', 'seconds']
        assert any(row[0] == 'View selection' for row in rows[1:])

    def test_data_costs_from_file(self, plane_mesh, views, split_costs, tmp_path):
        path = tmp_path / "costs.spt"
        save_data_costs(split_costs, path)

        result = Pipeline(PipelineConfig(smoothness=0.0, data_cost_file=path)).run(plane_mesh, views)
        assert list(result.labels) == [1, 2]

    def test_labeling_file_skips_selection(self, plane_mesh, views, tmp_path):
        path = tmp_path / "labeling.vec"
        save_labeling([2, 2], path)

        result = Pipeline(PipelineConfig(labeling_file=path)).run(plane_mesh, views)
        assert result.selection is None
        assert list(result.labels) == [2, 2]
        assert np.allclose(result.patches[0].image, 0.6)

    def test_bad_labeling_rejected_before_writing(self, plane_mesh, views, tmp_path):
        path = tmp_path / "labeling.vec"
        save_labeling([1, 5], path)
        config = PipelineConfig(labeling_file=path, out_prefix=tmp_path / "scene",
                                write_timings=True)

        with pytest.raises(ValidationError):
            Pipeline(config).run(plane_mesh, views)
        assert not (tmp_path / "scene_timings.csv").exists()

    def test_mismatched_data_costs(self, plane_mesh, views):
        costs = DataCostTable.from_dense(np.ones((2, 3)))
        with pytest.raises(ValidationError, match="views"):
            Pipeline().run(plane_mesh, views, costs)

    def test_requires_data_costs_or_labeling(self, plane_mesh, views):
        with pytest.raises(ValidationError, match="No data costs"):
            Pipeline().run(plane_mesh, views)

    def test_mesh_from_file(self, plane_mesh, views, split_costs, tmp_path):
        path = tmp_path / "plane.ply"
        plane_mesh.export(path)

        result = Pipeline(PipelineConfig(smoothness=0.0)).run(path, views, split_costs)
        assert result.graph.num_nodes == 2

    def test_missing_mesh_file(self, views, split_costs, tmp_path):
        with pytest.raises(FileNotFoundError):
            Pipeline().run(tmp_path / "missing.ply", views, split_costs)


class TestLoggingUtils:
    """Tests for logging helpers."""

    def test_timer_records_elapsed(self):
        with Timer("work") as timer:
            pass
        assert timer.elapsed >= 0

    def test_timing_tree(self):
        stats = TimingStats("Stage", 2.0)
        stats.add_substep("Sub", 0.5)
        tree = stats.format_tree(4.0)
        assert "Stage" in tree and "Sub" in tree
        assert "50.0%" in tree

    def test_progress_counter(self):
        counter = ProgressCounter("items", total=3, update_interval=0.0)
        assert [counter.inc() for _ in range(3)] == [1, 2, 3]

    def test_setup_logging_levels(self):
        assert setup_logging(verbose=True).level == 10
        assert setup_logging(quiet=True).level == 30
        setup_logging()
