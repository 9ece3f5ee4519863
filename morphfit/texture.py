"""
texture.py
──────────────────────────────────────────────────────────────
Isomap extraction: re-sample the input photo into the model's
fixed UV layout.

For each front-facing triangle the covered texels are found in UV
space, their barycentric coordinates interpolate a 3D position,
that position is projected with the 3x4 camera matrix and the
photo is sampled there.  Texels of back-facing (self-occluded)
triangles, and texels no triangle covers, keep alpha = 0.
──────────────────────────────────────────────────────────────
"""
from __future__ import annotations

import logging

import numpy as np
import numpy.typing as npt
from scipy.ndimage import map_coordinates

from morphfit import config
from morphfit.camera import project_affine
from morphfit.errors import InvalidInputError
from morphfit.mesh import Mesh
from morphfit.orientation import ccw_in_screen_space

logger = logging.getLogger(__name__)

INTERPOLATION_ORDER = {"nearest": 0, "bilinear": 1}
_BARYCENTRIC_EPS = 1e-9


def _barycentric(xs: np.ndarray, ys: np.ndarray, tri: np.ndarray) -> np.ndarray:
    """(3, n) barycentric coordinates of the points (xs, ys) w.r.t. the 2D triangle ``tri``."""
    (x0, y0), (x1, y1), (x2, y2) = tri
    d = (y1 - y2) * (x0 - x2) + (x2 - x1) * (y0 - y2)
    l0 = ((y1 - y2) * (xs - x2) + (x2 - x1) * (ys - y2)) / d
    l1 = ((y2 - y0) * (xs - x2) + (x0 - x2) * (ys - y2)) / d
    return np.stack([l0, l1, 1.0 - l0 - l1])


def _view_angle_alpha(mesh: Mesh, camera_matrix: np.ndarray, triangles: np.ndarray) -> np.ndarray:
    """255 * |cos| of the angle between each face normal and the viewing direction, at least 1."""
    v = mesh.vertices[triangles]                                   # (T, 3, 3)
    normals = np.cross(v[:, 1] - v[:, 0], v[:, 2] - v[:, 0])
    normals /= np.linalg.norm(normals, axis=1, keepdims=True) + 1e-12
    view_dir = np.cross(camera_matrix[0, :3], camera_matrix[1, :3])
    view_dir /= np.linalg.norm(view_dir) + 1e-12
    cosine = np.abs(normals @ view_dir)
    return np.clip(np.rint(cosine * 255.0), 1, 255).astype(np.uint8)


def extract_texture(mesh: Mesh,
                    camera_matrix: npt.ArrayLike,
                    image: np.ndarray,
                    isomap_resolution: int = config.ISOMAP_RESOLUTION,
                    interpolation: str = "bilinear",
                    compute_view_angle: bool = False) -> np.ndarray:
    """
    Extract the isomap of ``image`` for a fitted mesh.

    :param mesh: fitted mesh, needs texture coordinates
    :param camera_matrix: 3x4 projection to pixel coordinates
        (``get_3x4_affine_camera_matrix``)
    :param image: (H, W) or (H, W, C) uint8 image; the colour channel order
        is kept (BGR in, BGR out)
    :param interpolation: "bilinear" or "nearest"; samples outside the image
        are clamped to the border
    :param compute_view_angle: alpha of visible texels encodes how directly
        the triangle faces the camera (1..255) instead of a flat 255
    :return: (R, R, 4) uint8 isomap, alpha 0 where nothing visible was sampled
    """
    if mesh.texcoords is None:
        raise InvalidInputError("mesh has no texture coordinates")
    if interpolation not in INTERPOLATION_ORDER:
        raise InvalidInputError(f"unknown interpolation '{interpolation}'")
    if isomap_resolution < 2:
        raise InvalidInputError(f"isomap resolution must be at least 2, got {isomap_resolution}")

    image = np.asarray(image)
    if image.ndim == 2:
        image = image[:, :, np.newaxis]
    if image.shape[2] < 3:
        image = np.repeat(image[:, :, :1], 3, axis=2)
    image = image[:, :, :3].astype(np.float64)

    camera_matrix = np.asarray(camera_matrix, dtype=np.float64)
    res = int(isomap_resolution)
    projected = project_affine(mesh.vertices, camera_matrix)
    front_facing = ccw_in_screen_space(projected, mesh.triangles)
    visible = np.flatnonzero(front_facing)

    if compute_view_angle:
        alpha_of = _view_angle_alpha(mesh, camera_matrix, mesh.triangles[visible])
    else:
        alpha_of = np.full(len(visible), 255, dtype=np.uint8)

    uv = mesh.texcoords * (res - 1)
    texel_rows, texel_cols, source_points, alphas = [], [], [], []
    for triangle_index, alpha in zip(visible, alpha_of):
        tri = mesh.triangles[triangle_index]
        tri_uv = uv[tri]

        x_min = max(int(np.floor(tri_uv[:, 0].min())), 0)
        x_max = min(int(np.ceil(tri_uv[:, 0].max())), res - 1)
        y_min = max(int(np.floor(tri_uv[:, 1].min())), 0)
        y_max = min(int(np.ceil(tri_uv[:, 1].max())), res - 1)
        if x_min > x_max or y_min > y_max:
            continue
        e1, e2 = tri_uv[1] - tri_uv[0], tri_uv[2] - tri_uv[0]
        if abs(e1[0] * e2[1] - e1[1] * e2[0]) < 1e-12:
            continue

        xs, ys = np.meshgrid(np.arange(x_min, x_max + 1), np.arange(y_min, y_max + 1))
        xs, ys = xs.ravel(), ys.ravel()
        bary = _barycentric(xs.astype(np.float64), ys.astype(np.float64), tri_uv)
        inside = np.all(bary >= -_BARYCENTRIC_EPS, axis=0)
        if not inside.any():
            continue

        points_3d = bary[:, inside].T @ mesh.vertices[tri]
        texel_rows.append(ys[inside])
        texel_cols.append(xs[inside])
        source_points.append(project_affine(points_3d, camera_matrix))
        alphas.append(np.full(inside.sum(), alpha, dtype=np.uint8))

    isomap = np.zeros((res, res, 4), dtype=np.uint8)
    if not texel_rows:
        logger.warning("no visible triangle covers the isomap")
        return isomap

    rows = np.concatenate(texel_rows)
    cols = np.concatenate(texel_cols)
    source = np.vstack(source_points)
    coords = np.vstack([source[:, 1], source[:, 0]])          # (y, x) order
    order = INTERPOLATION_ORDER[interpolation]
    for c in range(3):
        samples = map_coordinates(image[:, :, c], coords, order=order, mode="nearest")
        isomap[rows, cols, c] = np.clip(np.rint(samples), 0, 255).astype(np.uint8)
    isomap[rows, cols, 3] = np.concatenate(alphas)

    logger.debug("extracted isomap: %d of %d texels visible", int((isomap[:, :, 3] > 0).sum()), res * res)
    return isomap


def visibility_mask(isomap: np.ndarray) -> np.ndarray:
    """(R, R) bool, True where the isomap holds a visible sample."""
    return np.asarray(isomap)[:, :, 3] > 0
