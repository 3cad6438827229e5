# ABOUTME: Mesh loading, validation and per-vertex topology information
# ABOUTME: Builds the shared edge table and classifies vertices as simple, border or complex

import logging
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Union

import numpy as np
import trimesh
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components

from .errors import ValidationError

logger = logging.getLogger('texrecon')


class VertexType(IntEnum):
    SIMPLE = 0
    BORDER = 1
    COMPLEX = 2


def validate_mesh(mesh: trimesh.Trimesh) -> None:
    """
    Validate mesh has reasonable properties for texturing.

    Args:
        mesh: Mesh to validate

    Raises:
        ValueError: If mesh is invalid or degenerate
        ValidationError: If faces reference missing vertices
    """
    if len(mesh.vertices) == 0:
        raise ValueError("Mesh has no vertices")

    if len(mesh.faces) == 0:
        raise ValueError(
            "Mesh has no faces (point clouds are not supported). "
            "Please provide a mesh with faces."
        )

    if np.any(~np.isfinite(mesh.vertices)):
        raise ValueError(
            "Mesh contains NaN or Inf vertex coordinates. "
            "Please check your mesh file for corruption."
        )

    if mesh.faces.min() < 0 or mesh.faces.max() >= len(mesh.vertices):
        raise ValidationError("Mesh faces reference vertices outside the vertex list")

    logger.debug("Mesh validation passed: %d vertices, %d faces",
                 len(mesh.vertices), len(mesh.faces))


def load_mesh(path: Union[str, Path]) -> trimesh.Trimesh:
    """
    Load a triangle mesh without any reordering or merging.

    Vertex and face order must survive loading because data costs and
    labelings are indexed by face.

    Args:
        path: Path to mesh file (.ply, .obj, ...)

    Returns:
        Loaded mesh

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If mesh is invalid or degenerate
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Mesh not found: {path}")

    mesh = trimesh.load(str(path), force='mesh', process=False)
    validate_mesh(mesh)

    logger.info("Loaded mesh: %d vertices, %d faces", len(mesh.vertices), len(mesh.faces))
    return mesh


@dataclass
class EdgeTable:
    """
    Undirected mesh edges and the face-edge slots that reference them.

    Face-edge slot ``3 * f + k`` is the edge from ``faces[f, k]`` to
    ``faces[f, (k + 1) % 3]``.

    Attributes:
        vertices: (E, 2) sorted vertex pairs, ordered by (a, b)
        slot_edge: (3F,) edge id of every face-edge slot
        counts: (E,) number of face slots sharing each edge
    """
    vertices: np.ndarray
    slot_edge: np.ndarray
    counts: np.ndarray

    @property
    def num_edges(self) -> int:
        return len(self.vertices)

    def grouped_slots(self):
        """Return (order, starts): slots sorted by edge id and each edge's first position."""
        order = np.argsort(self.slot_edge, kind='stable')
        starts = np.concatenate([[0], np.cumsum(self.counts)[:-1]])
        return order, starts


def build_edge_table(faces: np.ndarray, num_vertices: int) -> EdgeTable:
    """Compute the unique undirected edges of a triangle mesh."""
    faces = np.asarray(faces, dtype=np.int64)
    slot_pairs = faces[:, [0, 1, 1, 2, 2, 0]].reshape(-1, 2)
    lo = slot_pairs.min(axis=1)
    hi = slot_pairs.max(axis=1)
    keys = lo * np.int64(num_vertices) + hi

    unique_keys, inverse, counts = np.unique(keys, return_inverse=True, return_counts=True)
    vertices = np.stack([unique_keys // num_vertices, unique_keys % num_vertices], axis=1)

    return EdgeTable(vertices=vertices, slot_edge=inverse.reshape(-1), counts=counts)


class VertexInfoList:
    """
    Per-vertex incident faces and vertex classification.

    A vertex is COMPLEX when its incident faces form more than one fan or it
    touches an edge shared by more than two faces; BORDER when it lies on an
    edge used by a single face; SIMPLE otherwise.
    """

    def __init__(self, face_indptr: np.ndarray, face_indices: np.ndarray,
                 vertex_types: np.ndarray, edges: EdgeTable):
        self.face_indptr = face_indptr
        self.face_indices = face_indices
        self.vertex_types = vertex_types
        self.edges = edges

    @classmethod
    def create(cls, mesh: trimesh.Trimesh) -> 'VertexInfoList':
        faces = np.asarray(mesh.faces, dtype=np.int64)
        num_vertices = len(mesh.vertices)
        num_faces = len(faces)

        # Incident faces as CSR
        flat = faces.ravel()
        order = np.argsort(flat, kind='stable')
        face_indices = (order // 3).astype(np.int64)
        face_indptr = np.concatenate([[0], np.cumsum(np.bincount(flat, minlength=num_vertices))])

        edges = build_edge_table(faces, num_vertices)
        vertex_types = np.full(num_vertices, VertexType.SIMPLE, dtype=np.int8)

        border_edges = edges.vertices[edges.counts == 1]
        vertex_types[border_edges.ravel()] = VertexType.BORDER

        # Fans: link face corners across manifold edges, count components per vertex
        slot_order, starts = edges.grouped_slots()
        manifold = np.flatnonzero(edges.counts == 2)
        slot_a = slot_order[starts[manifold]]
        slot_b = slot_order[starts[manifold] + 1]

        def corners(slots):
            f = slots // 3
            k = slots % 3
            return 3 * f + k, 3 * f + (k + 1) % 3

        a_start, a_end = corners(slot_a)
        b_start, b_end = corners(slot_b)
        same_direction = flat[a_start] == flat[b_start]
        rows = np.concatenate([a_start, a_end])
        cols = np.concatenate([np.where(same_direction, b_start, b_end),
                               np.where(same_direction, b_end, b_start)])

        n_corners = 3 * num_faces
        corner_graph = coo_matrix((np.ones(len(rows), dtype=np.int8), (rows, cols)),
                                  shape=(n_corners, n_corners)).tocsr()
        _, fan_ids = connected_components(corner_graph, directed=False)

        fan_keys = np.unique(flat * np.int64(n_corners) + fan_ids)
        fans_per_vertex = np.bincount(fan_keys // n_corners, minlength=num_vertices)

        complex_mask = fans_per_vertex > 1
        non_manifold_edges = edges.vertices[edges.counts > 2]
        complex_mask[non_manifold_edges.ravel()] = True
        vertex_types[complex_mask] = VertexType.COMPLEX

        n_complex = int(complex_mask.sum())
        if n_complex:
            logger.warning("Mesh has %d complex (non-manifold) vertices", n_complex)
        logger.debug("Vertex infos: %d vertices, %d border, %d complex",
                     num_vertices, int((vertex_types == VertexType.BORDER).sum()), n_complex)

        return cls(face_indptr, face_indices, vertex_types, edges)

    @property
    def num_vertices(self) -> int:
        return len(self.vertex_types)

    def faces(self, vertex: int) -> np.ndarray:
        """Faces incident to a vertex, ascending."""
        return self.face_indices[self.face_indptr[vertex]:self.face_indptr[vertex + 1]]

    def vertex_type(self, vertex: int) -> VertexType:
        return VertexType(int(self.vertex_types[vertex]))

    def is_complex(self, vertex: int) -> bool:
        return self.vertex_types[vertex] == VertexType.COMPLEX
