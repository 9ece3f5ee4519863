"""
camera.py
──────────────────────────────────────────────────────────────
Camera model shared by fitting, texture extraction and rendering.

• ScaledOrthoProjectionParameters : rotation + 2D translation + scale,
  the result of the linear pose solve.
• RenderingParameters             : OpenGL-style description of the
  camera (model-view matrix, projection frustum, screen size).  The
  camera type is a small tagged variant; only the orthographic variant
  is produced by the fitter.
• get_3x4_affine_camera_matrix     : collapses an orthographic
  RenderingParameters into one 3x4 matrix mapping homogeneous model
  points straight to OpenCV pixel coordinates.
──────────────────────────────────────────────────────────────
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np
import numpy.typing as npt
from scipy.spatial.transform import Rotation

from morphfit import config
from morphfit.errors import InvalidInputError, UnderdeterminedFitError

logger = logging.getLogger(__name__)


class CameraType(Enum):
    ORTHOGRAPHIC = "orthographic"
    PERSPECTIVE = "perspective"


@dataclass(frozen=True)
class Frustum:
    left: float
    right: float
    bottom: float
    top: float


@dataclass(frozen=True, eq=False)
class ScaledOrthoProjectionParameters:
    """x_img = s * (R[0] . X + tx),  y_img = s * (R[1] . X + ty)  (y up)."""
    R: np.ndarray
    tx: float
    ty: float
    s: float


def _homogeneous(points: npt.ArrayLike) -> np.ndarray:
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    return np.hstack([points, np.ones((len(points), 1))])


def estimate_orthographic_projection_linear(image_points: npt.ArrayLike,
                                            model_points: npt.ArrayLike,
                                            is_viewport_upsidedown: bool = True,
                                            viewport_height: float = 0.0) -> ScaledOrthoProjectionParameters:
    """
    Estimate a scaled orthographic camera from 2D-3D correspondences.

    Solves the 8 entries of a 2x4 affine camera in the least-squares sense,
    then replaces the two 3-vectors by the closest rotation matrix (SVD) and
    averages their norms into the scale.

    :param image_points: (N, 2) pixel coordinates
    :param model_points: (N, 3) model coordinates
    :param is_viewport_upsidedown: image y axis points down (OpenCV); it is
        flipped with ``viewport_height`` so the solve happens in a y-up frame
    :raises UnderdeterminedFitError: fewer than 4 points, or all model points
        on one line
    """
    image_points = np.asarray(image_points, dtype=np.float64).reshape(-1, 2).copy()
    model_h = _homogeneous(model_points)
    num_points = len(image_points)
    if num_points != len(model_h):
        raise InvalidInputError(f"{num_points} image points for {len(model_h)} model points")
    if num_points < config.MIN_CORRESPONDENCES:
        raise UnderdeterminedFitError(
            f"camera estimation needs at least {config.MIN_CORRESPONDENCES} correspondences, "
            f"got {num_points}")
    if np.linalg.matrix_rank(model_h) < 3:
        raise UnderdeterminedFitError("model points are collinear, camera is underdetermined")

    if is_viewport_upsidedown:
        image_points[:, 1] = viewport_height - image_points[:, 1]

    A = np.zeros((2 * num_points, 8))
    A[0::2, 0:4] = model_h
    A[1::2, 4:8] = model_h
    b = image_points.reshape(-1)          # [x0, y0, x1, y1, ...]
    k = np.linalg.lstsq(A, b, rcond=None)[0]

    R_1, R_2 = k[0:3], k[4:7]
    norm_1, norm_2 = np.linalg.norm(R_1), np.linalg.norm(R_2)
    if norm_1 < 1e-12 or norm_2 < 1e-12:
        raise UnderdeterminedFitError("affine camera estimate collapsed to zero scale")
    s = (norm_1 + norm_2) / 2.0
    R_1 = R_1 / norm_1
    R_2 = R_2 / norm_2
    R = np.vstack([R_1, R_2, np.cross(R_1, R_2)])

    # Closest orthonormal matrix, with det(R) = +1
    U, _, Vt = np.linalg.svd(R)
    R_ortho = U @ Vt
    if np.linalg.det(R_ortho) < 0:
        U[:, -1] *= -1
        R_ortho = U @ Vt

    return ScaledOrthoProjectionParameters(R=R_ortho, tx=k[3] / s, ty=k[7] / s, s=s)


@dataclass(frozen=True, eq=False)
class RenderingParameters:
    """
    Camera state handed from the fitter to texture extraction and rendering.

    Orthographic: the frustum is expressed in model units (image size / scale).
    Perspective: ``fovy`` (radians) and ``t_z`` are used, the frustum is unused.
    """
    camera_type: CameraType
    rotation: Rotation
    t_x: float
    t_y: float
    frustum: Frustum
    screen_width: int
    screen_height: int
    t_z: float = 0.0
    fovy: Optional[float] = None

    @classmethod
    def from_ortho(cls, ortho_params: ScaledOrthoProjectionParameters,
                   screen_width: int, screen_height: int) -> "RenderingParameters":
        s = ortho_params.s
        return cls(
            camera_type=CameraType.ORTHOGRAPHIC,
            rotation=Rotation.from_matrix(ortho_params.R),
            t_x=float(ortho_params.tx),
            t_y=float(ortho_params.ty),
            frustum=Frustum(0.0, screen_width / s, 0.0, screen_height / s),
            screen_width=int(screen_width),
            screen_height=int(screen_height),
        )

    @property
    def scale(self) -> float:
        """Pixels per model unit (orthographic only)."""
        return self.screen_width / (self.frustum.right - self.frustum.left)

    def get_rotation_matrix(self) -> np.ndarray:
        return self.rotation.as_matrix()

    def get_yaw_pitch_roll(self) -> tuple[float, float, float]:
        """Head pose in degrees; yaw about y, pitch about x, roll about z."""
        yaw, pitch, roll = self.rotation.as_euler("YXZ", degrees=True)
        return float(yaw), float(pitch), float(roll)

    def get_modelview(self) -> np.ndarray:
        modelview = np.eye(4)
        modelview[:3, :3] = self.get_rotation_matrix()
        modelview[:3, 3] = (self.t_x, self.t_y, self.t_z)
        return modelview

    def get_projection(self) -> np.ndarray:
        if self.camera_type is CameraType.ORTHOGRAPHIC:
            return ortho(self.frustum.left, self.frustum.right, self.frustum.bottom, self.frustum.top)
        aspect = self.screen_width / self.screen_height
        return perspective(self.fovy, aspect, 0.1, 1000.0)


def ortho(left: float, right: float, bottom: float, top: float) -> np.ndarray:
    """OpenGL orthographic projection with near=-1, far=1."""
    P = np.eye(4)
    P[0, 0] = 2.0 / (right - left)
    P[1, 1] = 2.0 / (top - bottom)
    P[2, 2] = -1.0
    P[0, 3] = -(right + left) / (right - left)
    P[1, 3] = -(top + bottom) / (top - bottom)
    return P


def perspective(fovy: float, aspect: float, z_near: float, z_far: float) -> np.ndarray:
    """OpenGL perspective projection, right-handed, clip z in [-1, 1]."""
    if fovy is None:
        raise InvalidInputError("perspective camera needs a field of view")
    tan_half = np.tan(fovy / 2.0)
    P = np.zeros((4, 4))
    P[0, 0] = 1.0 / (aspect * tan_half)
    P[1, 1] = 1.0 / tan_half
    P[2, 2] = -(z_far + z_near) / (z_far - z_near)
    P[2, 3] = -(2.0 * z_far * z_near) / (z_far - z_near)
    P[3, 2] = -1.0
    return P


def get_opencv_viewport(width: int, height: int) -> np.ndarray:
    """Viewport (x, y, w, h) that flips y so the origin is top-left, like OpenCV."""
    return np.array([0.0, float(height), float(width), -float(height)])


def viewport_matrix(viewport: npt.ArrayLike) -> np.ndarray:
    """4x4 form of the viewport transform, leaving z and w untouched."""
    x, y, w, h = np.asarray(viewport, dtype=np.float64)
    return np.array([
        [w / 2.0, 0.0, 0.0, w / 2.0 + x],
        [0.0, h / 2.0, 0.0, h / 2.0 + y],
        [0.0, 0.0, 1.0, 0.0],
        [0.0, 0.0, 0.0, 1.0],
    ])


def project(points: npt.ArrayLike, modelview: np.ndarray, projection: np.ndarray,
            viewport: npt.ArrayLike) -> np.ndarray:
    """
    Map model points to window coordinates (``glm::project`` semantics).

    :param points: (N, 3)
    :return: (N, 3) window x, y and depth in [0, 1]
    """
    clip = _homogeneous(points) @ (projection @ modelview).T
    ndc = clip[:, :3] / clip[:, 3:4]
    ndc = ndc * 0.5 + 0.5
    x, y, w, h = np.asarray(viewport, dtype=np.float64)
    window = ndc.copy()
    window[:, 0] = ndc[:, 0] * w + x
    window[:, 1] = ndc[:, 1] * h + y
    return window


def get_3x4_affine_camera_matrix(rendering_params: RenderingParameters,
                                 width: int, height: int) -> np.ndarray:
    """
    Combine model-view, orthographic projection and OpenCV viewport into a
    3x4 matrix whose last row is [0, 0, 0, 1].
    """
    if rendering_params.camera_type is not CameraType.ORTHOGRAPHIC:
        raise InvalidInputError("an affine camera matrix only exists for orthographic cameras")
    mvp = rendering_params.get_projection() @ rendering_params.get_modelview()
    full = viewport_matrix(get_opencv_viewport(width, height)) @ mvp
    camera = full[:3, :].copy()
    camera[2, :] = (0.0, 0.0, 0.0, 1.0)
    return camera


def project_affine(points: npt.ArrayLike, camera_matrix: np.ndarray) -> np.ndarray:
    """
    Project (N, 3) model points with a 3x4 camera matrix to (N, 2) pixels.

    The homogeneous divide makes this work for any 3x4 projection, not only
    affine ones.
    """
    projected = _homogeneous(points) @ np.asarray(camera_matrix, dtype=np.float64).T
    return projected[:, :2] / projected[:, 2:3]
