# ABOUTME: Sparse per-face per-view data cost table
# ABOUTME: Validation, column/lookup access, and binary .spt persistence

import logging
from pathlib import Path
from typing import Union, Optional

import numpy as np

from .errors import ValidationError

logger = logging.getLogger('texrecon')

_MAGIC = b'spt\n'
_FORMAT = b'format binary_little_endian 1.0\n'


class DataCostTable:
    """
    Sparse table of non-negative costs ``D(face, view)``.

    Only feasible entries are stored. A missing entry means the view cannot
    texture the face (invisible, occluded or back-facing). Entries are kept
    sorted by (face, view) with costs as float32.

    Attributes:
        num_faces: Number of faces F
        num_views: Number of views V
        faces: (E,) face index of each entry
        views: (E,) view index (0-based) of each entry
        costs: (E,) cost of each entry
    """

    def __init__(self, num_faces: int, num_views: int,
                 faces: np.ndarray, views: np.ndarray, costs: np.ndarray):
        """
        Initialize from entry arrays.

        Raises:
            ValidationError: On negative/NaN costs, out-of-range indices,
                duplicate entries or mismatched array lengths
        """
        faces = np.asarray(faces, dtype=np.int64).ravel()
        views = np.asarray(views, dtype=np.int64).ravel()
        costs = np.asarray(costs, dtype=np.float64).ravel()

        if num_faces < 0 or num_views < 0:
            raise ValidationError(f"Invalid table shape ({num_faces}, {num_views})")
        if not (len(faces) == len(views) == len(costs)):
            raise ValidationError(
                f"Entry arrays differ in length: {len(faces)} faces, {len(views)} views, {len(costs)} costs")
        if np.isnan(costs).any():
            raise ValidationError(f"Data costs contain NaN (first at entry {int(np.flatnonzero(np.isnan(costs))[0])})")
        negative = np.flatnonzero(costs < 0)
        if len(negative):
            i = int(negative[0])
            raise ValidationError(
                f"Negative data cost {costs[i]} for face {int(faces[i])}, view {int(views[i])}")
        if len(faces) and (faces.min() < 0 or faces.max() >= num_faces):
            raise ValidationError(f"Data cost face index out of range 0..{num_faces - 1}")
        if len(views) and (views.min() < 0 or views.max() >= num_views):
            raise ValidationError(f"Data cost view index out of range 0..{num_views - 1}")

        too_large = np.flatnonzero(np.isfinite(costs) & (costs > np.finfo(np.float32).max))
        if len(too_large):
            raise ValidationError(f"Data cost {costs[too_large[0]]} exceeds float32 range")

        # Infinite costs are infeasible: store them as absent
        feasible = np.isfinite(costs)
        faces, views, costs = faces[feasible], views[feasible], costs[feasible]

        keys = faces * np.int64(max(num_views, 1)) + views
        order = np.argsort(keys, kind='stable')
        keys = keys[order]
        if len(keys) > 1 and np.any(keys[1:] == keys[:-1]):
            dup = int(np.flatnonzero(keys[1:] == keys[:-1])[0])
            raise ValidationError(
                f"Duplicate data cost entry for face {int(faces[order][dup])}, view {int(views[order][dup])}")

        self.num_faces = int(num_faces)
        self.num_views = int(num_views)
        self.faces = faces[order]
        self.views = views[order]
        self.costs = costs[order].astype(np.float32)
        self._keys = keys

        view_order = np.argsort(self.views, kind='stable')
        self._view_entries = view_order
        self._view_indptr = np.concatenate(
            [[0], np.cumsum(np.bincount(self.views, minlength=self.num_views))])

    @classmethod
    def from_dense(cls, matrix: np.ndarray) -> 'DataCostTable':
        """
        Build from a dense (F, V) matrix where ``inf`` marks infeasible entries.
        """
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.ndim != 2:
            raise ValidationError(f"Dense data costs must be 2-D, got shape {matrix.shape}")
        num_faces, num_views = matrix.shape
        faces, views = np.nonzero(~np.isposinf(matrix))
        return cls(num_faces, num_views, faces, views, matrix[faces, views])

    @property
    def num_entries(self) -> int:
        return len(self.costs)

    @property
    def shape(self):
        return (self.num_faces, self.num_views)

    def to_dense(self) -> np.ndarray:
        """Dense (F, V) float64 matrix with ``inf`` for infeasible entries."""
        dense = np.full((self.num_faces, self.num_views), np.inf)
        dense[self.faces, self.views] = self.costs
        return dense

    def column(self, view: int) -> np.ndarray:
        """Costs of one view for all faces, ``inf`` where infeasible."""
        col = np.full(self.num_faces, np.inf)
        idx = self._view_entries[self._view_indptr[view]:self._view_indptr[view + 1]]
        col[self.faces[idx]] = self.costs[idx]
        return col

    def lookup(self, faces: np.ndarray, views: np.ndarray) -> np.ndarray:
        """Vectorized ``D(face, view)``; ``inf`` for infeasible pairs."""
        faces = np.asarray(faces, dtype=np.int64)
        views = np.asarray(views, dtype=np.int64)
        keys = faces * np.int64(max(self.num_views, 1)) + views
        out = np.full(len(keys), np.inf)
        if not len(self._keys):
            return out
        pos = np.minimum(np.searchsorted(self._keys, keys), len(self._keys) - 1)
        found = self._keys[pos] == keys
        out[found] = self.costs[pos[found]]
        return out

    def cost(self, face: int, view: int) -> float:
        return float(self.lookup(np.array([face]), np.array([view]))[0])

    def feasible_counts(self) -> np.ndarray:
        """Number of feasible views per face."""
        return np.bincount(self.faces, minlength=self.num_faces)

    def best_views(self) -> np.ndarray:
        """
        Per-face minimum-cost view, lowest view index on ties, -1 when no view is feasible.
        """
        best = np.full(self.num_faces, -1, dtype=np.int64)
        if self.num_entries == 0:
            return best
        order = np.lexsort((self.views, self.costs, self.faces))
        faces_sorted = self.faces[order]
        first = np.concatenate([[True], faces_sorted[1:] != faces_sorted[:-1]])
        best[faces_sorted[first]] = self.views[order][first]
        return best

    def __eq__(self, other) -> bool:
        if not isinstance(other, DataCostTable):
            return NotImplemented
        return (self.shape == other.shape
                and np.array_equal(self.faces, other.faces)
                and np.array_equal(self.views, other.views)
                and np.array_equal(self.costs, other.costs))

    def __repr__(self) -> str:
        return f"DataCostTable(num_faces={self.num_faces}, num_views={self.num_views}, entries={self.num_entries})"


def save_data_costs(table: DataCostTable, filepath: Union[str, Path]) -> None:
    """
    Save a data cost table.

    Layout: ASCII header (``spt``, format line, face/view/entry counts,
    ``end_header``) followed by little-endian uint32 faces, uint16 views and
    float32 costs.

    Args:
        table: Table to save
        filepath: Output path
    """
    filepath = Path(filepath)
    if table.num_views > np.iinfo(np.uint16).max:
        raise ValidationError(f"Too many views for .spt format: {table.num_views}")

    with open(filepath, 'wb') as f:
        f.write(_MAGIC)
        f.write(_FORMAT)
        f.write(f'element face {table.num_faces}\n'.encode())
        f.write(f'element view {table.num_views}\n'.encode())
        f.write(f'element entry {table.num_entries}\n'.encode())
        f.write(b'end_header\n')
        f.write(table.faces.astype('<u4').tobytes())
        f.write(table.views.astype('<u2').tobytes())
        f.write(table.costs.astype('<f4').tobytes())

    logger.debug("Wrote %d data cost entries to %s", table.num_entries, filepath)


def load_data_costs(filepath: Union[str, Path],
                    expected_faces: Optional[int] = None) -> DataCostTable:
    """
    Load a data cost table written by ``save_data_costs``.

    Args:
        filepath: Input path
        expected_faces: If given, the table must have exactly this many faces

    Returns:
        DataCostTable

    Raises:
        FileNotFoundError: If the file does not exist
        ValidationError: If the file is malformed or sized for another mesh
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Data cost file not found: {filepath}")

    with open(filepath, 'rb') as f:
        if f.readline() != _MAGIC or f.readline() != _FORMAT:
            raise ValidationError(f"Not a data cost file: {filepath}")
        counts = {}
        for name in ('face', 'view', 'entry'):
            parts = f.readline().split()
            if len(parts) != 3 or parts[0] != b'element' or parts[1].decode() != name:
                raise ValidationError(f"Malformed data cost header in {filepath}")
            counts[name] = int(parts[2])
        if f.readline() != b'end_header\n':
            raise ValidationError(f"Malformed data cost header in {filepath}")
        payload = f.read()

    n = counts['entry']
    expected_size = n * (4 + 2 + 4)
    if len(payload) != expected_size:
        raise ValidationError(
            f"Data cost file {filepath} has {len(payload)} payload bytes, expected {expected_size}")

    faces = np.frombuffer(payload, dtype='<u4', count=n, offset=0)
    views = np.frombuffer(payload, dtype='<u2', count=n, offset=4 * n)
    costs = np.frombuffer(payload, dtype='<f4', count=n, offset=6 * n)

    if expected_faces is not None and counts['face'] != expected_faces:
        raise ValidationError(
            f"Data cost file has {counts['face']} faces, mesh has {expected_faces}")

    table = DataCostTable(counts['face'], counts['view'], faces, views, costs)
    logger.debug("Loaded %d data cost entries from %s", table.num_entries, filepath)
    return table
