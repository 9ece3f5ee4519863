"""
fitting.py
──────────────────────────────────────────────────────────────
Shape, expression and camera fitting of a morphable model to 2D
landmarks.

One iteration (see ``fit_iteration``):
  1) correspondences : fixed interior landmarks + contour landmarks
                       matched to the current silhouette
  2) camera          : linear scaled-orthographic pose solve
  3) shape           : regularised linear least squares, camera fixed
  4) expression      : non-negative least squares over blendshapes
  5) mesh            : regenerated from the new coefficients

The running estimate is a ``FitState`` value passed into and returned
from every iteration, so a single step can be tested on its own.
──────────────────────────────────────────────────────────────
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import numpy.typing as npt
from scipy.optimize import nnls

from morphfit import config
from morphfit.camera import (
    RenderingParameters,
    estimate_orthographic_projection_linear,
    get_3x4_affine_camera_matrix,
    project_affine,
)
from morphfit.contour import ContourLandmarks, ModelContour, get_contour_correspondences, turned_away_side
from morphfit.edge_topology import EdgeTopology, occluding_boundary_vertices
from morphfit.errors import InvalidInputError, UnderdeterminedFitError
from morphfit.landmarks import Landmark, LandmarkMapper, mean_landmark_error
from morphfit.mesh import Mesh
from morphfit.morphablemodel import Blendshape, MorphableModel, PcaModel, blendshapes_to_basis, sample_to_mesh
from morphfit.orientation import ccw_in_screen_space

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
#                               Data containers
# -----------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class Correspondences:
    """2D image points paired with model vertex indices."""
    image_points: np.ndarray
    vertex_indices: np.ndarray

    def __post_init__(self) -> None:
        points = np.asarray(self.image_points, dtype=np.float64).reshape(-1, 2)
        indices = np.asarray(self.vertex_indices, dtype=np.int64).reshape(-1)
        if len(points) != len(indices):
            raise InvalidInputError(f"{len(points)} image points for {len(indices)} vertices")
        object.__setattr__(self, "image_points", points)
        object.__setattr__(self, "vertex_indices", indices)

    def __len__(self) -> int:
        return len(self.vertex_indices)

    def concat(self, other: "Correspondences") -> "Correspondences":
        return Correspondences(np.vstack([self.image_points, other.image_points]),
                               np.concatenate([self.vertex_indices, other.vertex_indices]))


@dataclass(frozen=True, eq=False)
class FittingProblem:
    """Everything that stays constant during one fitting run. Build it with ``create``."""
    model: MorphableModel
    blendshapes: tuple[Blendshape, ...]
    blendshape_basis: np.ndarray
    landmarks: tuple[Landmark, ...]
    landmark_mapper: LandmarkMapper
    image_width: int
    image_height: int
    edge_topology: EdgeTopology
    contour_landmarks: ContourLandmarks
    model_contour: ModelContour
    fixed_correspondences: Correspondences
    lambda_: float = config.SHAPE_LAMBDA
    num_shape_coefficients: int = 0
    contour_max_distance: Optional[float] = config.CONTOUR_MAX_DISTANCE

    @classmethod
    def create(cls,
               model: MorphableModel,
               blendshapes: Sequence[Blendshape],
               landmarks: Sequence[Landmark],
               landmark_mapper: LandmarkMapper,
               image_width: int,
               image_height: int,
               edge_topology: EdgeTopology,
               contour_landmarks: ContourLandmarks,
               model_contour: ModelContour,
               lambda_: float = config.SHAPE_LAMBDA,
               num_shape_coefficients: Optional[int] = None,
               contour_max_distance: Optional[float] = config.CONTOUR_MAX_DISTANCE) -> "FittingProblem":
        """
        Validate the inputs and precompute what the iterations share.

        :raises InvalidInputError: empty landmark set, size mismatches between
            model and blendshapes, indices that do not exist in the model, ...
        """
        shape_model = model.shape_model
        num_vertices = shape_model.num_vertices
        num_triangles = len(shape_model.triangle_list)

        landmarks = tuple(landmarks)
        if not landmarks:
            raise InvalidInputError("no landmarks given")
        if image_width <= 0 or image_height <= 0:
            raise InvalidInputError(f"invalid image size {image_width}x{image_height}")
        if lambda_ < 0:
            raise InvalidInputError(f"regularisation must be non-negative, got {lambda_}")
        if contour_max_distance is not None and not contour_max_distance > 0:
            raise InvalidInputError(f"contour distance threshold must be positive, got {contour_max_distance}")

        blendshapes = tuple(blendshapes)
        for b in blendshapes:
            if b.deformation.size != 3 * num_vertices:
                raise InvalidInputError(
                    f"blendshape '{b.name}' has {b.deformation.size} values, "
                    f"the model needs {3 * num_vertices}")

        if landmark_mapper.max_vertex_index() >= num_vertices:
            raise InvalidInputError(
                f"landmark mapping references vertex {landmark_mapper.max_vertex_index()}, "
                f"the model has {num_vertices} vertices")
        model_contour.validate(num_vertices)
        edge_topology.validate(num_vertices, num_triangles)

        if num_shape_coefficients is None:
            num_shape_coefficients = shape_model.num_principal_components
        if not 0 <= num_shape_coefficients <= shape_model.num_principal_components:
            raise InvalidInputError(
                f"cannot fit {num_shape_coefficients} of "
                f"{shape_model.num_principal_components} shape coefficients")

        return cls(
            model=model,
            blendshapes=blendshapes,
            blendshape_basis=blendshapes_to_basis(blendshapes, 3 * num_vertices),
            landmarks=landmarks,
            landmark_mapper=landmark_mapper,
            image_width=int(image_width),
            image_height=int(image_height),
            edge_topology=edge_topology,
            contour_landmarks=contour_landmarks,
            model_contour=model_contour,
            fixed_correspondences=fixed_correspondences(landmarks, landmark_mapper, contour_landmarks),
            lambda_=float(lambda_),
            num_shape_coefficients=int(num_shape_coefficients),
            contour_max_distance=None if contour_max_distance is None else float(contour_max_distance),
        )

    def camera_matrix(self, rendering_params: RenderingParameters) -> np.ndarray:
        return get_3x4_affine_camera_matrix(rendering_params, self.image_width, self.image_height)

    def make_mesh(self, shape_coefficients: np.ndarray, blendshape_coefficients: np.ndarray) -> Mesh:
        """Mesh generated purely from the coefficient vectors."""
        shape = self.model.shape_model.draw_sample(shape_coefficients)
        if blendshape_coefficients.size:
            shape = shape + self.blendshape_basis @ blendshape_coefficients
        color = self.model.color_model.mean if self.model.has_color_model() else None
        return sample_to_mesh(shape, color, self.model.shape_model.triangle_list,
                              self.model.texture_coordinates)


@dataclass(frozen=True, eq=False)
class FitState:
    """Current estimate threaded through the iterations."""
    shape_coefficients: np.ndarray
    blendshape_coefficients: np.ndarray
    rendering_params: RenderingParameters
    mesh: Mesh


@dataclass(frozen=True, eq=False)
class FittingResult:
    mesh: Mesh
    rendering_params: RenderingParameters
    shape_coefficients: np.ndarray
    blendshape_coefficients: np.ndarray
    reprojection_errors: tuple[float, ...]   # mean pixel error after each iteration


# -----------------------------------------------------------------------------
#                              Linear solvers
# -----------------------------------------------------------------------------

def _vertex_rows(vertex_ids: np.ndarray) -> np.ndarray:
    """Row indices of the x, y, z entries of the given vertices in a (3V, ...) array."""
    return (3 * vertex_ids[:, np.newaxis] + np.arange(3)).reshape(-1)


def _projected_system(basis_rows: np.ndarray, base_points: np.ndarray,
                      camera_matrix: np.ndarray, image_points: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Linear system ``A @ x + b`` for the projected residuals of
    ``base_points + basis @ x`` under an affine camera.

    :param basis_rows: (3N, M) basis rows of the correspondence vertices
    :param base_points: (N, 3)
    :return: A (2N, M), b (2N,)
    """
    P = np.asarray(camera_matrix, dtype=np.float64)[:2, :3]
    t = np.asarray(camera_matrix, dtype=np.float64)[:2, 3]
    num_points = len(base_points)
    A = np.einsum("ij,njm->nim", P, basis_rows.reshape(num_points, 3, -1)).reshape(2 * num_points, -1)
    b = (base_points @ P.T + t - image_points).reshape(-1)
    return A, b


def fit_shape_to_landmarks_linear(shape_model: PcaModel,
                                  camera_matrix: np.ndarray,
                                  image_points: npt.ArrayLike,
                                  vertex_ids: npt.ArrayLike,
                                  base_face: Optional[npt.ArrayLike] = None,
                                  lambda_: float = config.SHAPE_LAMBDA,
                                  num_coefficients: Optional[int] = None) -> np.ndarray:
    """
    Shape coefficients minimising the reprojection error at the given
    vertices, with the camera held fixed.

    Minimises ``|P (base + B c) - y|^2 + lambda * sum_k c_k^2 / eigenvalue_k``,
    i.e. Tikhonov regularisation weighted by the inverse component variance.

    :param camera_matrix: 3x4 affine camera (``get_3x4_affine_camera_matrix``)
    :param base_face: (3V,) face the basis is added to, defaults to the mean
    :return: (num_coefficients,) coefficients in model units
    """
    vertex_ids = np.asarray(vertex_ids, dtype=np.int64).reshape(-1)
    image_points = np.asarray(image_points, dtype=np.float64).reshape(-1, 2)
    if len(vertex_ids) == 0:
        raise UnderdeterminedFitError("no correspondences for the shape fit")
    if num_coefficients is None:
        num_coefficients = shape_model.num_principal_components
    if num_coefficients == 0:
        return np.zeros(0)

    base_face = shape_model.mean if base_face is None else np.asarray(base_face, dtype=np.float64)
    rows = _vertex_rows(vertex_ids)
    A, b = _projected_system(shape_model.orthonormal_basis[rows, :num_coefficients],
                             base_face[rows].reshape(-1, 3), camera_matrix, image_points)

    regulariser = lambda_ / shape_model.eigenvalues[:num_coefficients]
    lhs = A.T @ A + np.diag(regulariser)
    rhs = -A.T @ b
    try:
        return np.linalg.solve(lhs, rhs)
    except np.linalg.LinAlgError as e:
        raise UnderdeterminedFitError(
            f"shape fit with {len(vertex_ids)} correspondences and "
            f"{num_coefficients} coefficients is singular") from e


def fit_blendshapes_to_landmarks_nnls(blendshapes: Sequence[Blendshape] | np.ndarray,
                                      face_instance: npt.ArrayLike,
                                      camera_matrix: np.ndarray,
                                      image_points: npt.ArrayLike,
                                      vertex_ids: npt.ArrayLike) -> np.ndarray:
    """
    Non-negative blendshape weights minimising the reprojection error of
    ``face_instance + blendshapes @ w`` at the given vertices.

    :param blendshapes: list of Blendshape, or their (3V, B) basis matrix
    :param face_instance: (3V,) current identity shape
    """
    face_instance = np.asarray(face_instance, dtype=np.float64).reshape(-1)
    if isinstance(blendshapes, np.ndarray):
        basis = blendshapes
    else:
        basis = blendshapes_to_basis(blendshapes, face_instance.size)
    if basis.shape[1] == 0:
        return np.zeros(0)

    vertex_ids = np.asarray(vertex_ids, dtype=np.int64).reshape(-1)
    image_points = np.asarray(image_points, dtype=np.float64).reshape(-1, 2)
    if len(vertex_ids) == 0:
        raise UnderdeterminedFitError("no correspondences for the expression fit")

    rows = _vertex_rows(vertex_ids)
    A, b = _projected_system(basis[rows, :], face_instance[rows].reshape(-1, 3),
                             camera_matrix, image_points)
    coefficients, _ = nnls(A, -b)
    return coefficients


# -----------------------------------------------------------------------------
#                              Correspondences
# -----------------------------------------------------------------------------

def fixed_correspondences(landmarks: Sequence[Landmark],
                          landmark_mapper: LandmarkMapper,
                          contour_landmarks: ContourLandmarks) -> Correspondences:
    """
    Interior landmarks with a vertex mapping.

    Unmapped identifiers are skipped silently, contour landmarks are left
    for the silhouette search.
    """
    points, indices = [], []
    for landmark in landmarks:
        if contour_landmarks.is_contour_landmark(landmark.name):
            continue
        vertex = landmark_mapper.convert(landmark.name)
        if vertex is None:
            logger.debug("landmark %s has no mapping, skipped", landmark.name)
            continue
        points.append(landmark.coordinates)
        indices.append(vertex)
    return Correspondences(np.reshape(points, (-1, 2)), np.asarray(indices, dtype=np.int64))


def contour_correspondences(problem: FittingProblem, mesh: Mesh,
                            rendering_params: RenderingParameters) -> Correspondences:
    """
    Contour landmarks matched to silhouette vertices under the given camera.

    Only the landmarks of the side turning away from the camera are used,
    each within ``problem.contour_max_distance`` pixels of its vertex.
    """
    projected = project_affine(mesh.vertices, problem.camera_matrix(rendering_params))
    front_facing = ccw_in_screen_space(projected, mesh.triangles)
    silhouette = occluding_boundary_vertices(problem.edge_topology, front_facing)
    side = turned_away_side(problem.model_contour, mesh.vertices, rendering_params.get_rotation_matrix())
    matches = get_contour_correspondences(problem.landmarks, problem.contour_landmarks,
                                          problem.model_contour, silhouette, projected,
                                          sides=() if side is None else (side,),
                                          max_distance=problem.contour_max_distance)
    return Correspondences(np.reshape([m.image_point for m in matches], (-1, 2)),
                           np.asarray([m.vertex_index for m in matches], dtype=np.int64))


def reprojection_error(mesh: Mesh, camera_matrix: np.ndarray, correspondences: Correspondences) -> float:
    """Mean pixel distance between the projected vertices and their image points."""
    projected = project_affine(mesh.vertices[correspondences.vertex_indices], camera_matrix)
    return mean_landmark_error(projected, correspondences.image_points)


# -----------------------------------------------------------------------------
#                                 Iteration
# -----------------------------------------------------------------------------

def _estimate_pose(problem: FittingProblem, mesh: Mesh, correspondences: Correspondences) -> RenderingParameters:
    if len(correspondences) < config.MIN_CORRESPONDENCES:
        raise UnderdeterminedFitError(
            f"{len(correspondences)} correspondences, at least "
            f"{config.MIN_CORRESPONDENCES} are needed to estimate the camera")
    ortho = estimate_orthographic_projection_linear(
        correspondences.image_points, mesh.vertices[correspondences.vertex_indices],
        is_viewport_upsidedown=True, viewport_height=problem.image_height)
    return RenderingParameters.from_ortho(ortho, problem.image_width, problem.image_height)


def initial_state(problem: FittingProblem) -> FitState:
    """Mean shape, a first pose from the interior landmarks and a first expression fit."""
    shape_coefficients = np.zeros(problem.num_shape_coefficients)
    blendshape_coefficients = np.zeros(len(problem.blendshapes))
    mesh = problem.make_mesh(shape_coefficients, blendshape_coefficients)

    fixed = problem.fixed_correspondences
    rendering_params = _estimate_pose(problem, mesh, fixed)
    blendshape_coefficients = fit_blendshapes_to_landmarks_nnls(
        problem.blendshape_basis, problem.model.shape_model.draw_sample(shape_coefficients),
        problem.camera_matrix(rendering_params), fixed.image_points, fixed.vertex_indices)

    return FitState(
        shape_coefficients=shape_coefficients,
        blendshape_coefficients=blendshape_coefficients,
        rendering_params=rendering_params,
        mesh=problem.make_mesh(shape_coefficients, blendshape_coefficients),
    )


def fit_iteration(problem: FittingProblem, state: FitState) -> tuple[FitState, Correspondences]:
    """
    One refinement step. Pure: returns the new state and the
    correspondences it was computed from.
    """
    shape_model = problem.model.shape_model

    # 1) fixed + contour correspondences, contour under the previous camera
    contour = contour_correspondences(problem, state.mesh, state.rendering_params)
    correspondences = problem.fixed_correspondences.concat(contour)

    # 2) camera
    rendering_params = _estimate_pose(problem, state.mesh, correspondences)
    camera_matrix = problem.camera_matrix(rendering_params)

    # 3) identity shape on top of the current expression
    mean_plus_blendshapes = shape_model.mean
    if state.blendshape_coefficients.size:
        mean_plus_blendshapes = mean_plus_blendshapes + problem.blendshape_basis @ state.blendshape_coefficients
    shape_coefficients = fit_shape_to_landmarks_linear(
        shape_model, camera_matrix, correspondences.image_points, correspondences.vertex_indices,
        base_face=mean_plus_blendshapes, lambda_=problem.lambda_,
        num_coefficients=problem.num_shape_coefficients)

    # 4) expression on top of the new identity
    blendshape_coefficients = fit_blendshapes_to_landmarks_nnls(
        problem.blendshape_basis, shape_model.draw_sample(shape_coefficients),
        camera_matrix, correspondences.image_points, correspondences.vertex_indices)

    # 5) new mesh
    new_state = FitState(
        shape_coefficients=shape_coefficients,
        blendshape_coefficients=blendshape_coefficients,
        rendering_params=rendering_params,
        mesh=problem.make_mesh(shape_coefficients, blendshape_coefficients),
    )
    logger.debug("iteration: %d fixed + %d contour correspondences",
                 len(problem.fixed_correspondences), len(contour))
    return new_state, correspondences


def fit_shape_and_pose(model: MorphableModel,
                       blendshapes: Sequence[Blendshape],
                       landmarks: Sequence[Landmark],
                       landmark_mapper: LandmarkMapper,
                       image_width: int,
                       image_height: int,
                       edge_topology: EdgeTopology,
                       contour_landmarks: ContourLandmarks,
                       model_contour: ModelContour,
                       num_iterations: int = config.NUM_ITERATIONS,
                       num_shape_coefficients: Optional[int] = None,
                       lambda_: float = config.SHAPE_LAMBDA,
                       contour_max_distance: Optional[float] = config.CONTOUR_MAX_DISTANCE) -> FittingResult:
    """
    Fit shape, expression and an orthographic camera to 2D landmarks.

    :param num_iterations: number of refinement iterations (the only bound on runtime)
    :param num_shape_coefficients: fit only the leading components, default all
    :param lambda_: shape regularisation strength
    :param contour_max_distance: pixels; contour matches farther away are dropped, None keeps all
    :raises InvalidInputError: structurally invalid inputs
    :raises UnderdeterminedFitError: too few usable correspondences
    """
    if num_iterations < 0:
        raise InvalidInputError(f"num_iterations must be >= 0, got {num_iterations}")

    problem = FittingProblem.create(model, blendshapes, landmarks, landmark_mapper,
                                    image_width, image_height, edge_topology,
                                    contour_landmarks, model_contour,
                                    lambda_=lambda_, num_shape_coefficients=num_shape_coefficients,
                                    contour_max_distance=contour_max_distance)
    state = initial_state(problem)

    errors = []
    for i in range(num_iterations):
        state, correspondences = fit_iteration(problem, state)
        error = reprojection_error(state.mesh, problem.camera_matrix(state.rendering_params), correspondences)
        errors.append(error)
        logger.debug("iteration %d/%d: mean reprojection error %.3f px", i + 1, num_iterations, error)

    yaw, pitch, roll = state.rendering_params.get_yaw_pitch_roll()
    logger.info("fitted %d landmarks in %d iterations (yaw %.1f, pitch %.1f, roll %.1f deg)",
                len(problem.landmarks), num_iterations, yaw, pitch, roll)

    return FittingResult(
        mesh=state.mesh,
        rendering_params=state.rendering_params,
        shape_coefficients=state.shape_coefficients,
        blendshape_coefficients=state.blendshape_coefficients,
        reprojection_errors=tuple(errors),
    )
