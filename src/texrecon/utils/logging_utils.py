"""
Logging utilities for the texturing pipeline.

Provides structured logging with timestamps, stage timing, and progress tracking.
"""

import csv
import logging
import threading
import time
from pathlib import Path
from typing import Optional, List, Union
from dataclasses import dataclass, field

LOGGER_NAME = 'texrecon'


def setup_logging(verbose: bool = False, quiet: bool = False) -> logging.Logger:
    """
    Configure logging for the pipeline.

    Args:
        verbose: Enable DEBUG level logging
        quiet: Only show WARNING and above

    Returns:
        Configured logger
    """
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)

    formatter = logging.Formatter(
        '[%(asctime)s] [%(levelname)s] %(message)s',
        datefmt='%H:%M:%S'
    )

    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # Prevent propagation to root logger
    logger.propagate = False

    return logger


class Timer:
    """Context manager for timing operations with automatic logging."""

    def __init__(self, name: str, logger: Optional[logging.Logger] = None):
        """
        Initialize timer.

        Args:
            name: Name of the operation being timed
            logger: Logger to use (defaults to the texrecon logger)
        """
        self.name = name
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.start_time = None
        self.elapsed = None

    def __enter__(self):
        self.start_time = time.time()
        self.logger.info("[TIMER] %s started...", self.name)
        return self

    def __exit__(self, *args):
        self.elapsed = time.time() - self.start_time
        self.logger.info("[OK] %s complete in %.2fs", self.name, self.elapsed)


@dataclass
class TimingStats:
    """Track timing statistics for pipeline stages."""

    name: str
    elapsed: float
    substeps: List['TimingStats'] = field(default_factory=list)

    def add_substep(self, name: str, elapsed: float):
        """Add a substep timing."""
        self.substeps.append(TimingStats(name, elapsed))

    def get_percentage(self, total: float) -> float:
        """Get percentage of total time."""
        return (self.elapsed / total * 100) if total > 0 else 0

    def format_tree(self, total_time: float, indent: int = 0) -> str:
        """Format as a tree structure."""
        lines = []
        prefix = "  " * indent
        pct = self.get_percentage(total_time)

        if self.elapsed < 1:
            time_str = f"{self.elapsed*1000:.0f}ms"
        else:
            time_str = f"{self.elapsed:.1f}s"

        dots = "." * max(1, 50 - len(prefix) - len(self.name))
        lines.append(f"{prefix}{self.name} {dots} {time_str:>8} ({pct:>5.1f}%)")

        for substep in self.substeps:
            lines.extend(substep.format_tree(total_time, indent + 1).split('\n'))

        return '\n'.join(lines)


def write_timings(stats: List[TimingStats], filepath: Union[str, Path]) -> None:
    """
    Write stage timings as CSV (stage, substep, seconds).

    Args:
        stats: Top-level timing stats
        filepath: Output CSV path
    """
    with open(filepath, 'w', newline='') as f:
        writer = csv.writer(f)
        writer.writerow(['stage', 'substep', 'seconds'])
        for stat in stats:
            writer.writerow([stat.name, '', f"{stat.elapsed:.6f}"])
            for sub in stat.substeps:
                writer.writerow([stat.name, sub.name, f"{sub.elapsed:.6f}"])


class ProgressCounter:
    """Count completed work items and log progress at a time interval.

    Safe to call ``inc`` from worker threads.
    """

    def __init__(self,
                 name: str,
                 total: int,
                 update_interval: float = 5.0,
                 logger: Optional[logging.Logger] = None):
        """
        Initialize progress counter.

        Args:
            name: Name of the operation
            total: Number of work items
            update_interval: How often to log updates (seconds)
            logger: Logger to use
        """
        self.name = name
        self.total = total
        self.update_interval = update_interval
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.count = 0
        self.start_time = time.time()
        self.last_update = self.start_time
        self._lock = threading.Lock()

    def inc(self) -> int:
        """
        Mark one item done and log if the interval passed.

        Returns:
            Number of items done so far
        """
        with self._lock:
            self.count += 1
            now = time.time()
            if now - self.last_update >= self.update_interval or self.count == self.total:
                pct = (self.count / self.total * 100) if self.total > 0 else 100
                self.logger.info("%s: %d/%d (%.0f%%) after %.1fs",
                                 self.name, self.count, self.total, pct, now - self.start_time)
                self.last_update = now
            return self.count
