# ABOUTME: Groups same-label faces into texture patches and crops their pixels
# ABOUTME: Records every patch occurrence of every mesh vertex for seam detection

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
import trimesh
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components

from .adjacency_graph import AdjacencyGraph
from .errors import ValidationError
from .texture_patch import TexturePatch
from .texture_view import TextureView
from .utils.logging_utils import ProgressCounter
from .utils.parallel import ordered_map

logger = logging.getLogger('texrecon')


@dataclass
class VertexProjectionInfo:
    """Where a mesh vertex appears inside one texture patch."""
    patch_id: int
    projection: np.ndarray
    faces: List[int] = field(default_factory=list)


def find_patch_components(graph: AdjacencyGraph,
                          face_mask: Optional[np.ndarray] = None) -> List[np.ndarray]:
    """
    Maximal connected groups of faces sharing the same non-zero label.

    Args:
        graph: Labeled adjacency graph
        face_mask: (F,) bool, faces to consider; others are treated as unlabeled

    Returns:
        Face index arrays (ascending), ordered by their smallest face index
    """
    labels = graph.labels
    if face_mask is not None:
        labels = np.where(face_mask, labels, 0)
    u, v = graph.edge_u, graph.edge_v
    same = (labels[u] == labels[v]) & (labels[u] > 0)

    n = graph.num_nodes
    adjacency = coo_matrix((np.ones(int(same.sum()), dtype=np.int8), (u[same], v[same])),
                           shape=(n, n)).tocsr()
    _, component = connected_components(adjacency, directed=False)

    textured = np.flatnonzero(labels > 0)
    if len(textured) == 0:
        return []

    _, first, inverse = np.unique(component[textured], return_index=True, return_inverse=True)
    rank = np.empty(len(first), dtype=np.int64)
    rank[np.argsort(first, kind='stable')] = np.arange(len(first))
    patch_of_face = rank[inverse.reshape(-1)]

    order = np.argsort(patch_of_face, kind='stable')
    splits = np.cumsum(np.bincount(patch_of_face))[:-1]
    return np.split(textured[order], splits)


def _build_patch(component: np.ndarray, label: int, mesh_faces: np.ndarray,
                 vertices: np.ndarray, view: TextureView,
                 border: int) -> Optional[Tuple[np.ndarray, np.ndarray, np.ndarray, Tuple[int, int]]]:
    """Project one component into its view and crop the covering pixels."""
    tris = mesh_faces[component]
    proj = view.project(vertices[tris.ravel()]).reshape(-1, 3, 2)

    flat = proj.reshape(-1, 2)
    mins = flat.min(axis=0)
    maxs = flat.max(axis=0)
    x0 = max(int(np.floor(mins[0])) - border, 0)
    y0 = max(int(np.floor(mins[1])) - border, 0)
    x1 = min(int(np.ceil(maxs[0])) + border, view.width)
    y1 = min(int(np.ceil(maxs[1])) + border, view.height)
    if x1 <= x0 or y1 <= y0:
        logger.warning("View %d: component of %d faces projects outside the image",
                       view.view_id, len(component))
        return None

    image = view.image[y0:y1, x0:x1].copy()
    texcoords = proj - np.array([x0, y0], dtype=np.float64)
    return component, texcoords, image, (x0, y0)


def _projectable_faces(graph: AdjacencyGraph, mesh_faces: np.ndarray,
                       vertices: np.ndarray, views: Sequence[TextureView]) -> np.ndarray:
    """Textured faces whose corners all land in front of their view's camera."""
    labels = graph.labels
    keep = labels > 0
    for label in np.unique(labels[keep]):
        faces = np.flatnonzero(labels == label)
        view = views[label - 1]
        proj = view.project(vertices[mesh_faces[faces].ravel()]).reshape(-1, 3, 2)
        behind = ~np.isfinite(proj).all(axis=(1, 2))
        if behind.any():
            logger.warning("View %d: %d faces project behind the camera and stay untextured",
                           view.view_id, int(behind.sum()))
            keep[faces[behind]] = False
    return keep


def generate_texture_patches(graph: AdjacencyGraph,
                             mesh: trimesh.Trimesh,
                             views: Sequence[TextureView],
                             patch_border: int = 1,
                             max_workers: Optional[int] = None
                             ) -> Tuple[List[TexturePatch], List[List[VertexProjectionInfo]]]:
    """
    Create one texture patch per connected same-label component.

    Faces labeled 0 produce no patch. Faces projecting behind their view's
    camera are left out before grouping, so a component they cut in two
    becomes two patches. Components are built in parallel and
    collected in order, so patch ids do not depend on scheduling.

    Args:
        graph: Adjacency graph carrying the final labeling
        mesh: Triangle mesh
        views: Texture views indexed by ``label - 1``
        patch_border: Extra pixels around each patch's bounding box
        max_workers: Worker pool size

    Returns:
        (patches, vertex_projection_infos) where ``vertex_projection_infos[v]``
        lists every patch the vertex appears in, in patch order

    Raises:
        ValidationError: If a label refers to a missing view
    """
    max_label = int(graph.labels.max()) if graph.num_nodes else 0
    if max_label > len(views):
        raise ValidationError(f"Label {max_label} refers to a view that does not exist ({len(views)} views)")

    mesh_faces = np.asarray(mesh.faces, dtype=np.int64)
    vertices = np.asarray(mesh.vertices, dtype=np.float64)

    projectable = _projectable_faces(graph, mesh_faces, vertices, views)
    components = find_patch_components(graph, face_mask=projectable)
    counter = ProgressCounter("Generating texture patches", len(components))

    def build(component):
        label = int(graph.labels[component[0]])
        built = _build_patch(component, label, mesh_faces, vertices, views[label - 1], patch_border)
        counter.inc()
        return label, built

    results = ordered_map(build, components, max_workers=max_workers)

    patches: List[TexturePatch] = []
    for label, built in results:
        if built is None:
            continue
        faces, texcoords, image, origin = built
        patches.append(TexturePatch(len(patches), label, faces, texcoords, image, origin))

    vertex_projection_infos: List[List[VertexProjectionInfo]] = [[] for _ in range(len(vertices))]
    for patch in patches:
        corner_vertices = mesh_faces[patch.faces].ravel()
        corner_faces = np.repeat(patch.faces, 3)
        corner_coords = patch.texcoords.reshape(-1, 2)

        unique_vertices, first, inverse = np.unique(corner_vertices, return_index=True, return_inverse=True)
        order = np.argsort(inverse.reshape(-1), kind='stable')
        splits = np.cumsum(np.bincount(inverse.reshape(-1)))[:-1]
        for vertex, pos, corners in zip(unique_vertices, first, np.split(order, splits)):
            vertex_projection_infos[vertex].append(VertexProjectionInfo(
                patch_id=patch.patch_id,
                projection=corner_coords[pos].copy(),
                faces=corner_faces[corners].tolist(),
            ))

    n_textured = sum(p.num_faces for p in patches)
    logger.info("Generated %d texture patches covering %d/%d faces",
                len(patches), n_textured, graph.num_nodes)
    return patches, vertex_projection_infos
