"""Texturing pipeline - view selection, texture patches and seam leveling."""

from .config import PipelineConfig
from .orchestrator import Pipeline, PipelineResult

__all__ = ['PipelineConfig', 'Pipeline', 'PipelineResult']
