# ABOUTME: Configuration dataclass for pipeline settings
# ABOUTME: Validates user inputs and provides defaults

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..adjacency_graph import WEIGHT_POLICIES
from ..linear_solver import SOLVER_METHODS
from ..view_selection import EXCLUDED_PENALTY


@dataclass
class PipelineConfig:
    """Configuration for the texturing pipeline."""

    # View selection
    smoothness: float = 1.0  # Potts lambda
    weight_policy: str = 'uniform'  # 'uniform' or 'edge_length'
    max_iterations: int = 20  # Alpha-expansion passes
    excluded_penalty: float = EXCLUDED_PENALTY

    # Seam leveling
    global_seam_leveling: bool = True
    local_seam_leveling: bool = True
    seam_smoothness: float = 0.1
    correction_regularization: float = 1e-3
    solver_method: str = 'cg'  # 'cg' or 'direct'
    solver_tolerance: float = 1e-6
    solver_max_iterations: int = 1000
    local_blend_radius: float = 8.0  # Pixels
    color_clamp: float = 1.0

    # Patches
    patch_border: int = 1
    max_workers: Optional[int] = None  # None lets the thread pool decide

    # Inputs and outputs
    data_cost_file: Optional[Path] = None
    labeling_file: Optional[Path] = None
    out_prefix: Optional[Path] = None
    write_intermediate_results: bool = False
    write_timings: bool = False

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.smoothness < 0:
            raise ValueError(f"smoothness must be non-negative, got {self.smoothness}")

        if self.weight_policy not in WEIGHT_POLICIES:
            raise ValueError(f"Invalid weight policy: {self.weight_policy}")

        if self.max_iterations < 1 or self.solver_max_iterations < 1:
            raise ValueError("Iteration caps must be positive")

        if self.solver_method not in SOLVER_METHODS:
            raise ValueError(f"Invalid solver method: {self.solver_method}")

        if self.solver_tolerance <= 0:
            raise ValueError("solver_tolerance must be positive")

        if self.seam_smoothness < 0:
            raise ValueError("seam_smoothness must be non-negative")

        # Keeps the normal equations positive definite
        if self.correction_regularization <= 0:
            raise ValueError("correction_regularization must be positive")

        if self.patch_border < 0 or self.local_blend_radius < 0 or self.color_clamp < 0:
            raise ValueError("patch_border, local_blend_radius and color_clamp must be non-negative")

        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError(f"max_workers must be None or at least 1, got {self.max_workers}")

        # Convert paths
        if self.data_cost_file is not None:
            self.data_cost_file = Path(self.data_cost_file)
            if not self.data_cost_file.exists():
                raise FileNotFoundError(f"Data cost file not found: {self.data_cost_file}")

        if self.labeling_file is not None:
            self.labeling_file = Path(self.labeling_file)
            if not self.labeling_file.exists():
                raise FileNotFoundError(f"Labeling file not found: {self.labeling_file}")

        if self.out_prefix is not None:
            self.out_prefix = Path(self.out_prefix)
        elif self.write_intermediate_results or self.write_timings:
            raise ValueError("out_prefix is required to write intermediate results or timings")

    def output_path(self, suffix: str) -> Path:
        """Path of an output file next to ``out_prefix``, e.g. ``'_labeling.vec'``."""
        return self.out_prefix.with_name(self.out_prefix.name + suffix)
