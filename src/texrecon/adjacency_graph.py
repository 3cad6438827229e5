# ABOUTME: Face adjacency graph for view selection
# ABOUTME: Index-based edge list with smoothness weights and a flat label array

import logging
from typing import Optional, Sequence

import numpy as np
import trimesh

from .errors import ValidationError
from .mesh_info import VertexInfoList, build_edge_table

logger = logging.getLogger('texrecon')

WEIGHT_POLICIES = ('uniform', 'edge_length')


class AdjacencyGraph:
    """
    Undirected graph over mesh faces.

    Nodes are faces; an edge joins two faces that share a mesh edge. Edges
    are stored as sorted index arrays (``edge_u < edge_v``) so the graph can
    be read concurrently without any pointer structure. Only labels change
    after construction.

    Label 0 means "no view"; labels ``1..num_views`` select view ``label - 1``.
    """

    def __init__(self, num_nodes: int, edge_u: np.ndarray, edge_v: np.ndarray,
                 weights: Optional[np.ndarray] = None,
                 non_manifold: Optional[np.ndarray] = None,
                 num_views: Optional[int] = None):
        """
        Initialize graph from an explicit edge list.

        Args:
            num_nodes: Number of faces
            edge_u: (E,) first endpoint of each edge
            edge_v: (E,) second endpoint of each edge
            weights: (E,) smoothness weights (default 1.0)
            non_manifold: (E,) True where the shared mesh edge has more than two faces
            num_views: Number of candidate views V, upper bound for labels. Until it
                is set only label 0 is accepted
        """
        edge_u = np.asarray(edge_u, dtype=np.int64)
        edge_v = np.asarray(edge_v, dtype=np.int64)
        if edge_u.shape != edge_v.shape:
            raise ValidationError("Edge endpoint arrays differ in length")
        if len(edge_u) and (min(edge_u.min(), edge_v.min()) < 0
                            or max(edge_u.max(), edge_v.max()) >= num_nodes):
            raise ValidationError("Edge references a node outside 0..num_nodes-1")

        lo = np.minimum(edge_u, edge_v)
        hi = np.maximum(edge_u, edge_v)
        order = np.lexsort((hi, lo))

        self.num_nodes = int(num_nodes)
        self.edge_u = lo[order]
        self.edge_v = hi[order]
        self.weights = (np.ones(len(order)) if weights is None
                        else np.asarray(weights, dtype=np.float64)[order])
        self.non_manifold = (np.zeros(len(order), dtype=bool) if non_manifold is None
                             else np.asarray(non_manifold, dtype=bool)[order])
        self.num_views = num_views
        self.labels = np.zeros(self.num_nodes, dtype=np.int64)

        # CSR neighbor lists
        ends = np.concatenate([self.edge_u, self.edge_v])
        others = np.concatenate([self.edge_v, self.edge_u])
        nbr_order = np.lexsort((others, ends))
        self._nbr_indices = others[nbr_order]
        self._nbr_indices.flags.writeable = False
        self._nbr_indptr = np.concatenate(
            [[0], np.cumsum(np.bincount(ends, minlength=self.num_nodes))])

    @classmethod
    def build(cls, mesh: trimesh.Trimesh,
              vertex_infos: Optional[VertexInfoList] = None,
              num_views: Optional[int] = None,
              weight_policy: str = 'uniform') -> 'AdjacencyGraph':
        """
        Build the face adjacency graph of a triangle mesh.

        Every pair of faces sharing a mesh edge gets a graph edge. Mesh edges
        shared by more than two faces contribute all their face pairs and
        those graph edges are flagged as non-manifold.

        Args:
            mesh: Triangle mesh
            vertex_infos: Precomputed vertex infos (reuses their edge table)
            num_views: Number of candidate views
            weight_policy: 'uniform' or 'edge_length'

        Returns:
            AdjacencyGraph with all labels 0
        """
        if weight_policy not in WEIGHT_POLICIES:
            raise ValueError(f"Unknown weight policy: {weight_policy}. Must be one of {WEIGHT_POLICIES}")

        faces = np.asarray(mesh.faces, dtype=np.int64)
        vertices = np.asarray(mesh.vertices, dtype=np.float64)
        num_faces = len(faces)

        edges = vertex_infos.edges if vertex_infos is not None else build_edge_table(faces, len(vertices))
        slot_order, starts = edges.grouped_slots()

        pair_u, pair_v, pair_edge = [], [], []

        # Manifold edges: exactly two face slots
        manifold = np.flatnonzero(edges.counts == 2)
        pair_u.append(slot_order[starts[manifold]] // 3)
        pair_v.append(slot_order[starts[manifold] + 1] // 3)
        pair_edge.append(manifold)

        # Non-manifold edges: all face pairs, flagged
        non_manifold = np.flatnonzero(edges.counts > 2)
        for e in non_manifold:
            e_faces = slot_order[starts[e]:starts[e] + edges.counts[e]] // 3
            iu, iv = np.triu_indices(len(e_faces), k=1)
            pair_u.append(e_faces[iu])
            pair_v.append(e_faces[iv])
            pair_edge.append(np.full(len(iu), e))

        pair_u = np.concatenate(pair_u)
        pair_v = np.concatenate(pair_v)
        pair_edge = np.concatenate(pair_edge)

        # Drop self pairs from degenerate faces, then duplicate pairs (faces sharing two edges)
        keep = pair_u != pair_v
        pair_u, pair_v, pair_edge = pair_u[keep], pair_v[keep], pair_edge[keep]
        lo = np.minimum(pair_u, pair_v)
        hi = np.maximum(pair_u, pair_v)
        keys = lo * np.int64(num_faces) + hi
        _, first = np.unique(keys, return_index=True)
        lo, hi, pair_edge = lo[first], hi[first], pair_edge[first]

        flagged = edges.counts[pair_edge] > 2
        if len(non_manifold):
            logger.warning("Topology: %d non-manifold mesh edges, %d adjacency edges flagged",
                           len(non_manifold), int(flagged.sum()))

        if weight_policy == 'edge_length':
            ev = edges.vertices[pair_edge]
            lengths = np.linalg.norm(vertices[ev[:, 0]] - vertices[ev[:, 1]], axis=1)
            mean_length = lengths.mean() if len(lengths) else 1.0
            weights = lengths / mean_length if mean_length > 0 else np.ones(len(lengths))
        else:
            weights = np.ones(len(lo))

        graph = cls(num_faces, lo, hi, weights=weights, non_manifold=flagged, num_views=num_views)
        logger.info("Built adjacency graph: %d nodes, %d edges (%s weights)",
                    graph.num_nodes, graph.num_edges, weight_policy)
        return graph

    @property
    def num_edges(self) -> int:
        return len(self.edge_u)

    def neighbors(self, i: int) -> np.ndarray:
        """Neighbor face indices of node ``i`` (read-only view, ascending)."""
        self._check_node(i)
        return self._nbr_indices[self._nbr_indptr[i]:self._nbr_indptr[i + 1]]

    def get_label(self, i: int) -> int:
        self._check_node(i)
        return int(self.labels[i])

    def set_label(self, i: int, label: int) -> None:
        """
        Set the label of one node.

        Raises:
            ValidationError: If the node or the label is out of range
        """
        self._check_node(i)
        self._check_label(label)
        self.labels[i] = label

    def set_labels(self, labels: Sequence[int]) -> None:
        """
        Replace all labels at once. Nothing is mutated unless every label is valid.

        Raises:
            ValidationError: On length mismatch or any out-of-range label
        """
        labels = np.asarray(labels)
        if labels.shape != (self.num_nodes,):
            raise ValidationError(
                f"Labeling has {labels.size} entries, graph has {self.num_nodes} nodes")
        if labels.size and not np.issubdtype(labels.dtype, np.integer):
            raise ValidationError(f"Labels must be integers, got {labels.dtype}")
        if labels.size:
            bad = np.flatnonzero((labels < 0) | (labels > self.max_label))
            if len(bad):
                raise ValidationError(
                    f"Label {int(labels[bad[0]])} of face {int(bad[0])} is out of range "
                    f"0..{self.max_label} ({len(bad)} invalid entries)")
        self.labels[:] = labels

    @property
    def max_label(self) -> int:
        """Largest valid label. Without a view count only label 0 is accepted."""
        return 0 if self.num_views is None else int(self.num_views)

    def get_labels(self) -> np.ndarray:
        """Copy of the current labeling."""
        return self.labels.copy()

    def edge_is_flagged(self, i: int, j: int) -> bool:
        """True if the edge between faces i and j comes from a non-manifold mesh edge."""
        lo, hi = min(i, j), max(i, j)
        start = np.searchsorted(self.edge_u, lo, side='left')
        stop = np.searchsorted(self.edge_u, lo, side='right')
        pos = start + np.searchsorted(self.edge_v[start:stop], hi)
        if pos < stop and self.edge_v[pos] == hi:
            return bool(self.non_manifold[pos])
        raise KeyError(f"No edge between faces {i} and {j}")

    def _check_node(self, i: int) -> None:
        if not 0 <= i < self.num_nodes:
            raise ValidationError(f"Face index {i} out of range 0..{self.num_nodes - 1}")

    def _check_label(self, label: int) -> None:
        if not 0 <= label <= self.max_label:
            raise ValidationError(f"Label {label} out of range 0..{self.max_label}")
