# ABOUTME: Per-face labeling persistence and validated injection
# ABOUTME: Lets a precomputed labeling bypass view selection

import logging
import struct
from pathlib import Path
from typing import Sequence, Union

import numpy as np

from .adjacency_graph import AdjacencyGraph
from .errors import ValidationError

logger = logging.getLogger('texrecon')


def save_labeling(labeling: Sequence[int], filepath: Union[str, Path]) -> None:
    """
    Write a labeling as a little-endian uint64 count followed by uint64 labels.

    Args:
        labeling: One label per face
        filepath: Output path
    """
    labels = np.asarray(labeling)
    if labels.size and labels.min() < 0:
        raise ValidationError("Labels must be non-negative")
    with open(filepath, 'wb') as f:
        f.write(struct.pack('<Q', labels.size))
        f.write(labels.astype('<u8').tobytes())
    logger.debug("Wrote labeling with %d entries to %s", labels.size, filepath)


def load_labeling(filepath: Union[str, Path]) -> np.ndarray:
    """
    Read a labeling written by ``save_labeling``.

    Returns:
        (N,) int64 labels

    Raises:
        FileNotFoundError: If the file does not exist
        ValidationError: If the file is truncated or has trailing data
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Labeling file not found: {filepath}")

    data = filepath.read_bytes()
    if len(data) < 8:
        raise ValidationError(f"Labeling file {filepath} is truncated")
    (count,) = struct.unpack_from('<Q', data, 0)
    if len(data) != 8 + 8 * count:
        raise ValidationError(
            f"Labeling file {filepath} declares {count} labels but holds {(len(data) - 8) // 8}")
    return np.frombuffer(data, dtype='<u8', count=count, offset=8).astype(np.int64)


def apply_labeling(graph: AdjacencyGraph, labeling: Sequence[int]) -> None:
    """
    Transfer an externally supplied labeling onto the graph.

    The whole labeling is rejected if its length differs from the number of
    faces or any label exceeds the number of views; the graph keeps its prior
    labels in that case.

    Raises:
        ValidationError: Wrong labeling for this mesh/scene combination
    """
    if graph.num_views is None:
        raise ValidationError("Graph has no view count; cannot validate labeling range")
    labels = np.asarray(labeling)
    if labels.shape != (graph.num_nodes,):
        raise ValidationError(
            f"Wrong labeling for this mesh/scene combination: {labels.size} labels "
            f"for {graph.num_nodes} faces")
    graph.set_labels(labels)
    logger.info("Applied labeling: %d faces, %d untextured",
                graph.num_nodes, int((labels == 0).sum()))
