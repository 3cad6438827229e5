# ABOUTME: Main pipeline orchestrator
# ABOUTME: Runs view selection, patch generation and seam leveling with stage timing

import logging
import time
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Union

import numpy as np
import trimesh

from .config import PipelineConfig
from ..adjacency_graph import AdjacencyGraph
from ..data_costs import DataCostTable, load_data_costs, save_data_costs
from ..errors import ValidationError
from ..labeling import apply_labeling, load_labeling, save_labeling
from ..mesh_info import VertexInfoList, load_mesh, validate_mesh
from ..patch_builder import generate_texture_patches
from ..seam_leveling import (SeamLevelingReport, calculate_validity_masks,
                             global_seam_leveling, local_seam_leveling)
from ..texture_patch import TexturePatch
from ..texture_view import TextureView
from ..utils.logging_utils import Timer, TimingStats, write_timings
from ..view_selection import SelectionResult, ViewSelector


@dataclass
class PipelineResult:
    """Everything a pipeline run produced."""
    mesh: trimesh.Trimesh
    graph: AdjacencyGraph
    patches: List[TexturePatch]
    selection: Optional[SelectionResult] = None
    global_report: Optional[SeamLevelingReport] = None
    local_report: Optional[SeamLevelingReport] = None
    timing_stats: List[TimingStats] = field(default_factory=list)
    output_files: List[Path] = field(default_factory=list)

    @property
    def labels(self) -> np.ndarray:
        return self.graph.get_labels()


class Pipeline:
    """Main pipeline orchestrator for multi-view texturing."""

    def __init__(self, config: Optional[PipelineConfig] = None):
        """Initialize pipeline with configuration."""
        self.config = config or PipelineConfig()
        self.logger = logging.getLogger('texrecon')
        self.timing_stats: List[TimingStats] = []
        self.output_files: List[Path] = []

        self._selector = None

    @property
    def selector(self) -> ViewSelector:
        """Lazy initialization of ViewSelector."""
        if self._selector is None:
            self._selector = ViewSelector(
                smoothness=self.config.smoothness,
                max_iterations=self.config.max_iterations,
                excluded_penalty=self.config.excluded_penalty,
            )
        return self._selector

    def run(self, mesh: Union[trimesh.Trimesh, str, Path],
            views: Sequence[TextureView],
            data_costs: Optional[DataCostTable] = None) -> PipelineResult:
        """
        Execute the complete pipeline.

        Args:
            mesh: Triangle mesh or path to a mesh file
            views: Texture views; label ``l`` samples ``views[l - 1]``
            data_costs: Precomputed data costs; otherwise read from
                ``config.data_cost_file`` unless a labeling file is configured

        Returns:
            PipelineResult with the leveled texture patches

        Raises:
            ValidationError: On inconsistent inputs, before anything is written
            FileNotFoundError: If a configured input file is missing
        """
        start_time = time.time()
        self.timing_stats = []
        self.output_files = []

        self.logger.info("="*70)
        self.logger.info("TEXTURE RECONSTRUCTION")
        self.logger.info("="*70)
        self.logger.info("Views: %d", len(views))
        self.logger.info("Smoothness: %.4g (%s weights)", self.config.smoothness, self.config.weight_policy)
        self.logger.info("Global seam leveling: %s", "on" if self.config.global_seam_leveling else "off")
        self.logger.info("Local seam leveling: %s", "on" if self.config.local_seam_leveling else "off")
        self.logger.info("="*70)

        try:
            mesh, vertex_infos, graph = self._prepare_mesh(mesh, len(views))
            selection = self._select_views(graph, data_costs)
            patches, vertex_projection_infos = self._generate_patches(graph, mesh, views)
            global_report, local_report = self._level_seams(
                graph, mesh, vertex_infos, vertex_projection_infos, patches)

            if self.config.write_timings:
                self.config.out_prefix.parent.mkdir(parents=True, exist_ok=True)
                timings_path = self.config.output_path('_timings.csv')
                write_timings(self.timing_stats, timings_path)
                self.output_files.append(timings_path)

            self._print_summary(start_time)

            return PipelineResult(mesh=mesh, graph=graph, patches=patches, selection=selection,
                                  global_report=global_report, local_report=local_report,
                                  timing_stats=list(self.timing_stats),
                                  output_files=list(self.output_files))

        except Exception as e:
            self.logger.error("")
            self.logger.error("PIPELINE FAILED: %s", e)
            self.logger.error("Traceback:\n%s", traceback.format_exc())
            raise

    def _stage_header(self, title: str):
        self.logger.info("")
        self.logger.info("-"*70)
        self.logger.info(title)
        self.logger.info("-"*70)

    def _prepare_mesh(self, mesh, num_views: int):
        """Load and validate the mesh, classify vertices and build the adjacency graph."""
        self._stage_header("PREPARING MESH")

        with Timer("Mesh preparation", self.logger) as timer:
            if isinstance(mesh, (str, Path)):
                mesh = load_mesh(mesh)
            else:
                validate_mesh(mesh)

            with Timer("Vertex infos", self.logger) as info_timer:
                vertex_infos = VertexInfoList.create(mesh)

            with Timer("Adjacency graph", self.logger) as graph_timer:
                graph = AdjacencyGraph.build(mesh, vertex_infos, num_views=num_views,
                                             weight_policy=self.config.weight_policy)

        stats = TimingStats("Mesh preparation", timer.elapsed)
        stats.add_substep("Vertex infos", info_timer.elapsed)
        stats.add_substep("Adjacency graph", graph_timer.elapsed)
        self.timing_stats.append(stats)

        self.logger.info("Graph: %d faces, %d edges", graph.num_nodes, graph.num_edges)
        return mesh, vertex_infos, graph

    def _select_views(self, graph: AdjacencyGraph,
                      data_costs: Optional[DataCostTable]) -> Optional[SelectionResult]:
        """Apply a stored labeling or optimize one from data costs."""
        self._stage_header("VIEW SELECTION")

        selection = None
        with Timer("View selection", self.logger) as timer:
            if self.config.labeling_file is not None:
                self.logger.info("Loading labeling from %s", self.config.labeling_file)
                apply_labeling(graph, load_labeling(self.config.labeling_file))
            else:
                if data_costs is None:
                    if self.config.data_cost_file is None:
                        raise ValidationError("No data costs given and no data cost or labeling file configured")
                    data_costs = load_data_costs(self.config.data_cost_file, expected_faces=graph.num_nodes)
                selection = self.selector.select(data_costs, graph)

                if self.config.write_intermediate_results:
                    self.config.out_prefix.parent.mkdir(parents=True, exist_ok=True)
                    costs_path = self.config.output_path('_data_costs.spt')
                    labeling_path = self.config.output_path('_labeling.vec')
                    save_data_costs(data_costs, costs_path)
                    save_labeling(graph.get_labels(), labeling_path)
                    self.output_files.extend([costs_path, labeling_path])

        self.timing_stats.append(TimingStats("View selection", timer.elapsed))
        return selection

    def _generate_patches(self, graph: AdjacencyGraph, mesh: trimesh.Trimesh,
                          views: Sequence[TextureView]):
        self._stage_header("TEXTURE PATCHES")

        with Timer("Texture patch generation", self.logger) as timer:
            patches, vertex_projection_infos = generate_texture_patches(
                graph, mesh, views,
                patch_border=self.config.patch_border,
                max_workers=self.config.max_workers,
            )

        self.timing_stats.append(TimingStats("Texture patch generation", timer.elapsed))
        return patches, vertex_projection_infos

    def _level_seams(self, graph, mesh, vertex_infos, vertex_projection_infos, patches):
        """Global leveling (or plain validity masks), then optional local blending."""
        self._stage_header("SEAM LEVELING")
        cfg = self.config

        global_report = None
        local_report = None
        with Timer("Seam leveling", self.logger) as timer:
            with Timer("Global seam leveling" if cfg.global_seam_leveling else "Validity masks",
                       self.logger) as global_timer:
                if cfg.global_seam_leveling:
                    global_report = global_seam_leveling(
                        graph, mesh, vertex_infos, vertex_projection_infos, patches,
                        seam_smoothness=cfg.seam_smoothness,
                        regularization=cfg.correction_regularization,
                        tolerance=cfg.solver_tolerance,
                        max_iterations=cfg.solver_max_iterations,
                        solver=cfg.solver_method,
                        color_clamp=cfg.color_clamp,
                        border=cfg.patch_border,
                        max_workers=cfg.max_workers,
                    )
                else:
                    calculate_validity_masks(patches, border=cfg.patch_border,
                                             max_workers=cfg.max_workers)

            local_elapsed = None
            if cfg.local_seam_leveling:
                with Timer("Local seam leveling", self.logger) as local_timer:
                    local_report = local_seam_leveling(
                        graph, mesh, vertex_projection_infos, patches,
                        blend_radius=cfg.local_blend_radius,
                        color_clamp=cfg.color_clamp,
                        max_workers=cfg.max_workers,
                    )
                local_elapsed = local_timer.elapsed

        stats = TimingStats("Seam leveling", timer.elapsed)
        stats.add_substep(global_timer.name, global_timer.elapsed)
        if local_elapsed is not None:
            stats.add_substep("Local seam leveling", local_elapsed)
        self.timing_stats.append(stats)

        if global_report is not None and len(global_report.failed_components):
            self.logger.warning("%d seam leveling components were left uncorrected",
                                len(global_report.failed_components))
        return global_report, local_report

    def _print_summary(self, start_time: float):
        """Print performance summary."""
        total_time = time.time() - start_time

        self.logger.info("")
        self.logger.info("="*70)
        self.logger.info("PIPELINE COMPLETE in %.1fs", total_time)
        self.logger.info("="*70)
        self.logger.info("")

        if self.timing_stats:
            self.logger.info("TIMING BREAKDOWN:")
            for stat in self.timing_stats:
                self.logger.info(stat.format_tree(total_time))
            self.logger.info("")
            self.logger.info("Total: %.1fs", total_time)
            self.logger.info("")

        if self.output_files:
            self.logger.info("OUTPUT FILES:")
            for f in self.output_files:
                self.logger.info("  %s", f.name)
            self.logger.info("")
