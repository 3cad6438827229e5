# ABOUTME: Package initialization for multi-view mesh texturing
# ABOUTME: Exports main classes for easy importing

from .errors import TexturingError, ValidationError, TopologyError, NumericalError
from .mesh_info import VertexInfoList, VertexType, load_mesh
from .adjacency_graph import AdjacencyGraph
from .data_costs import DataCostTable, save_data_costs, load_data_costs
from .labeling import save_labeling, load_labeling, apply_labeling
from .view_selection import ViewSelector, SelectionResult
from .texture_view import TextureView
from .texture_patch import TexturePatch
from .patch_builder import VertexProjectionInfo, generate_texture_patches
from .seam_leveling import (SeamLevelingReport, global_seam_leveling,
                            calculate_validity_masks, local_seam_leveling)
from .pipeline import Pipeline, PipelineConfig, PipelineResult

__version__ = "0.1.0"

__all__ = [
    "TexturingError",
    "ValidationError",
    "TopologyError",
    "NumericalError",
    "VertexInfoList",
    "VertexType",
    "load_mesh",
    "AdjacencyGraph",
    "DataCostTable",
    "save_data_costs",
    "load_data_costs",
    "save_labeling",
    "load_labeling",
    "apply_labeling",
    "ViewSelector",
    "SelectionResult",
    "TextureView",
    "TexturePatch",
    "VertexProjectionInfo",
    "generate_texture_patches",
    "SeamLevelingReport",
    "global_seam_leveling",
    "calculate_validity_masks",
    "local_seam_leveling",
    "Pipeline",
    "PipelineConfig",
    "PipelineResult",
]
