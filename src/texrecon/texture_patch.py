# ABOUTME: Texture patch: pixels cropped from one view plus per-face texcoords
# ABOUTME: Rasterizes per-vertex color corrections into the pixel buffer

import logging
from typing import Optional, Tuple

import numpy as np
from scipy import ndimage

logger = logging.getLogger('texrecon')

# Barycentric slack so pixel centers on shared triangle edges are covered
_INSIDE_EPS = 1e-6


class TexturePatch:
    """
    A connected group of same-label faces and the pixels sampled for them.

    Texcoords are in patch pixel units: ``(0, 0)`` is the top-left corner of
    the patch buffer and pixel ``(col, row)`` has its center at
    ``(col + 0.5, row + 0.5)``.

    Attributes:
        patch_id: Index of the patch
        label: View label the pixels were sampled from
        faces: (K,) mesh face indices
        texcoords: (K, 3, 2) per face-vertex position in the patch buffer
        image: (H, W, 3) float32 RGB in [0, 1]
        origin: (col, row) of the patch's top-left pixel in the view image
        validity_mask: (H, W) bool, set by ``adjust_colors``
    """

    def __init__(self, patch_id: int, label: int, faces: np.ndarray,
                 texcoords: np.ndarray, image: np.ndarray,
                 origin: Tuple[int, int] = (0, 0)):
        self.patch_id = patch_id
        self.label = label
        self.faces = np.asarray(faces, dtype=np.int64)
        self.texcoords = np.asarray(texcoords, dtype=np.float64).reshape(-1, 3, 2)
        self.image = np.ascontiguousarray(image, dtype=np.float32)
        self.origin = origin
        self.validity_mask: Optional[np.ndarray] = None

        if len(self.faces) != len(self.texcoords):
            raise ValueError(
                f"Patch {patch_id}: {len(self.faces)} faces but {len(self.texcoords)} texcoord triples")

        # Per-channel range of the sampled pixels, bounds for later corrections
        if self.image.size:
            self.original_min = self.image.reshape(-1, 3).min(axis=0)
            self.original_max = self.image.reshape(-1, 3).max(axis=0)
        else:
            self.original_min = np.zeros(3, dtype=np.float32)
            self.original_max = np.ones(3, dtype=np.float32)

    @property
    def width(self) -> int:
        return self.image.shape[1]

    @property
    def height(self) -> int:
        return self.image.shape[0]

    @property
    def num_faces(self) -> int:
        return len(self.faces)

    def sample(self, points: np.ndarray) -> np.ndarray:
        """
        Bilinear color lookup at patch pixel coordinates.

        Args:
            points: (N, 2) positions in patch pixel units

        Returns:
            (N, 3) colors
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        x = np.clip(points[:, 0] - 0.5, 0, self.width - 1)
        y = np.clip(points[:, 1] - 0.5, 0, self.height - 1)
        x0 = np.floor(x).astype(np.int64)
        y0 = np.floor(y).astype(np.int64)
        x1 = np.minimum(x0 + 1, self.width - 1)
        y1 = np.minimum(y0 + 1, self.height - 1)
        fx = (x - x0)[:, None]
        fy = (y - y0)[:, None]

        img = self.image
        top = img[y0, x0] * (1 - fx) + img[y0, x1] * fx
        bottom = img[y1, x0] * (1 - fx) + img[y1, x1] * fx
        return top * (1 - fy) + bottom * fy

    def rasterize(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Find which face covers each pixel center.

        Returns:
            face_map: (H, W) local face index, -1 where uncovered
            barycentrics: (H, W, 3) barycentric coordinates in the covering face
        """
        H, W = self.height, self.width
        face_map = np.full((H, W), -1, dtype=np.int64)
        bary = np.zeros((H, W, 3), dtype=np.float64)

        for k, tri in enumerate(self.texcoords):
            (xa, ya), (xb, yb), (xc, yc) = tri
            denom = (yb - yc) * (xa - xc) + (xc - xb) * (ya - yc)
            if abs(denom) < 1e-12:
                logger.debug("Patch %d: skipping degenerate face %d", self.patch_id, self.faces[k])
                continue

            cmin = max(int(np.floor(tri[:, 0].min() - 0.5)), 0)
            cmax = min(int(np.ceil(tri[:, 0].max() - 0.5)), W - 1)
            rmin = max(int(np.floor(tri[:, 1].min() - 0.5)), 0)
            rmax = min(int(np.ceil(tri[:, 1].max() - 0.5)), H - 1)
            if cmin > cmax or rmin > rmax:
                continue

            X, Y = np.meshgrid(np.arange(cmin, cmax + 1) + 0.5, np.arange(rmin, rmax + 1) + 0.5)
            b0 = ((yb - yc) * (X - xc) + (xc - xb) * (Y - yc)) / denom
            b1 = ((yc - ya) * (X - xc) + (xa - xc) * (Y - yc)) / denom
            b2 = 1.0 - b0 - b1
            inside = (b0 >= -_INSIDE_EPS) & (b1 >= -_INSIDE_EPS) & (b2 >= -_INSIDE_EPS)

            rr, cc = np.nonzero(inside)
            face_map[rr + rmin, cc + cmin] = k
            bary[rr + rmin, cc + cmin] = np.stack([b0[inside], b1[inside], b2[inside]], axis=1)

        return face_map, bary

    def adjust_colors(self, adjust_values: np.ndarray, color_clamp: float = 1.0,
                      border: int = 1) -> None:
        """
        Add per face-vertex color corrections to the pixel buffer.

        Corrections are interpolated barycentrically inside every face and
        extended to uncovered pixels from the nearest covered pixel. Also
        computes the validity mask: covered pixels dilated by ``border``.

        Args:
            adjust_values: (K, 3, 3) or (3K, 3) corrections (face, corner, channel)
            color_clamp: Allowed overshoot beyond the original per-channel range
            border: Validity mask dilation in pixels
        """
        values = np.asarray(adjust_values, dtype=np.float64).reshape(self.num_faces, 3, 3)
        face_map, bary = self.rasterize()
        covered = face_map >= 0

        if covered.any() and np.any(values):
            correction = np.zeros((self.height, self.width, 3), dtype=np.float64)
            correction[covered] = np.einsum('nk,nkc->nc', bary[covered], values[face_map[covered]])
            if not covered.all():
                indices = ndimage.distance_transform_edt(
                    ~covered, return_distances=False, return_indices=True)
                correction = correction[indices[0], indices[1]]
            self.apply_correction(correction, color_clamp)

        if border > 0 and covered.any():
            self.validity_mask = ndimage.binary_dilation(covered, iterations=border)
        else:
            self.validity_mask = covered

    def apply_correction(self, correction: np.ndarray, color_clamp: float = 1.0) -> None:
        """
        Add a per-pixel correction and clamp to the original color range.

        Output stays within ``[min - color_clamp, max + color_clamp]`` of the
        originally sampled per-channel range, intersected with ``[0, 1]``.
        """
        lo = np.clip(self.original_min - color_clamp, 0.0, 1.0)
        hi = np.clip(self.original_max + color_clamp, 0.0, 1.0)
        self.image = np.clip(self.image + correction, lo, hi).astype(np.float32)

    def __repr__(self) -> str:
        return (f"TexturePatch(patch_id={self.patch_id}, label={self.label}, "
                f"faces={self.num_faces}, size={self.width}x{self.height})")
