# ABOUTME: Calibrated source image used to texture faces
# ABOUTME: Holds pixels as float RGB and a 3x4 projection matrix

import logging
from pathlib import Path
from typing import Union, Optional

import numpy as np
from PIL import Image

logger = logging.getLogger('texrecon')


class TextureView:
    """
    One calibrated photograph.

    Pixel ``(col, row)`` covers ``[col, col + 1) x [row, row + 1)`` in image
    coordinates, so its center is at ``(col + 0.5, row + 0.5)``.

    Attributes:
        view_id: Index of the view (0-based, label ``view_id + 1``)
        image: (H, W, 3) float32 RGB in [0, 1]
        projection: (3, 4) matrix mapping homogeneous world points to pixels
    """

    def __init__(self, view_id: int, image: np.ndarray, projection: np.ndarray,
                 image_path: Optional[Path] = None):
        image = np.asarray(image)
        if image.ndim == 2:
            image = np.repeat(image[:, :, None], 3, axis=2)
        if image.ndim != 3 or image.shape[2] < 3:
            raise ValueError(f"View {view_id}: expected an (H, W, 3) image, got {image.shape}")
        if image.dtype == np.uint8:
            image = image.astype(np.float32) / 255.0

        projection = np.asarray(projection, dtype=np.float64)
        if projection.shape != (3, 4):
            raise ValueError(f"View {view_id}: projection must be 3x4, got {projection.shape}")

        self.view_id = view_id
        self.image = np.ascontiguousarray(image[:, :, :3], dtype=np.float32)
        self.projection = projection
        self.image_path = image_path

    @classmethod
    def from_camera(cls, view_id: int, image: np.ndarray, K: np.ndarray,
                    R: np.ndarray, t: np.ndarray) -> 'TextureView':
        """Build from intrinsics K and world-to-camera rotation R and translation t."""
        Rt = np.hstack([np.asarray(R, dtype=np.float64), np.asarray(t, dtype=np.float64).reshape(3, 1)])
        return cls(view_id, image, np.asarray(K, dtype=np.float64) @ Rt)

    @classmethod
    def from_file(cls, view_id: int, image_path: Union[str, Path],
                  projection: np.ndarray) -> 'TextureView':
        """
        Load a view image from disk.

        Raises:
            FileNotFoundError: If the image doesn't exist
        """
        image_path = Path(image_path)
        if not image_path.exists():
            raise FileNotFoundError(f"View image not found: {image_path}")

        with Image.open(image_path) as img:
            pixels = np.asarray(img.convert('RGB'))

        logger.debug("Loaded view %d: %s (%dx%d)", view_id, image_path.name,
                     pixels.shape[1], pixels.shape[0])
        return cls(view_id, pixels, projection, image_path=image_path)

    @property
    def width(self) -> int:
        return self.image.shape[1]

    @property
    def height(self) -> int:
        return self.image.shape[0]

    def project(self, points: np.ndarray) -> np.ndarray:
        """
        Project world points to continuous pixel coordinates.

        Args:
            points: (N, 3) world points

        Returns:
            (N, 2) pixel coordinates; NaN for points at or behind the camera
        """
        points = np.asarray(points, dtype=np.float64)
        h = points @ self.projection[:, :3].T + self.projection[:, 3]
        depth = h[:, 2:3]
        with np.errstate(divide='ignore', invalid='ignore'):
            pixels = h[:, :2] / depth
        pixels[depth[:, 0] <= 0] = np.nan
        return pixels

    def __repr__(self) -> str:
        return f"TextureView(view_id={self.view_id}, size={self.width}x{self.height})"
