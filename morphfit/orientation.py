"""
Front-facing test for projected triangles.

Screen space has its origin in the top-left corner with y pointing down
(OpenCV convention).  A triangle whose world-space winding is CCW (OpenGL
front face) ends up with a negative signed area there, so that is what we
test for.  Zero-area triangles are never front-facing.

Fitting (silhouette search), texture extraction and the wireframe renderer
all call into this module.
"""
from __future__ import annotations

import numpy as np
import numpy.typing as npt


def _signed_area2(v0: np.ndarray, v1: np.ndarray, v2: np.ndarray) -> np.ndarray:
    dx01 = v1[..., 0] - v0[..., 0]
    dy01 = v1[..., 1] - v0[..., 1]
    dx02 = v2[..., 0] - v0[..., 0]
    dy02 = v2[..., 1] - v0[..., 1]
    return dx01 * dy02 - dy01 * dx02


def are_vertices_ccw_in_screen_space(v0: npt.ArrayLike, v1: npt.ArrayLike, v2: npt.ArrayLike) -> bool:
    """True if the three 2D screen points are front-facing (CCW on screen)."""
    return bool(_signed_area2(np.asarray(v0, dtype=np.float64),
                              np.asarray(v1, dtype=np.float64),
                              np.asarray(v2, dtype=np.float64)) < 0.0)


def ccw_in_screen_space(points_2d: npt.ArrayLike, triangles: npt.ArrayLike) -> np.ndarray:
    """
    Vectorised version of :func:`are_vertices_ccw_in_screen_space`.

    :param points_2d: (V, >=2) projected vertex positions, only x and y are used
    :param triangles: (T, 3) vertex indices
    :return: (T,) bool, True for front-facing triangles
    """
    points_2d = np.asarray(points_2d, dtype=np.float64)
    triangles = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)
    tri = points_2d[triangles][..., :2]          # (T, 3, 2)
    return _signed_area2(tri[:, 0], tri[:, 1], tri[:, 2]) < 0.0
