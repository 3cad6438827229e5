"""Logging, timing and worker-pool helpers."""

from .logging_utils import setup_logging, Timer, TimingStats, ProgressCounter, write_timings
from .parallel import ordered_map

__all__ = ['setup_logging', 'Timer', 'TimingStats', 'ProgressCounter', 'write_timings', 'ordered_map']
