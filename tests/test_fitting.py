import numpy as np
import pytest

from morphfit.camera import get_3x4_affine_camera_matrix
from morphfit.contour import ContourLandmarks, ModelContour
from morphfit.edge_topology import occluding_boundary_vertices
from morphfit.errors import InvalidInputError, UnderdeterminedFitError
from morphfit.fitting import (
    FittingProblem,
    contour_correspondences,
    fit_blendshapes_to_landmarks_nnls,
    fit_iteration,
    fit_shape_and_pose,
    fit_shape_to_landmarks_linear,
    fixed_correspondences,
    initial_state,
)
from morphfit.landmarks import Landmark, LandmarkMapper
from morphfit.morphablemodel import Blendshape
from morphfit.orientation import ccw_in_screen_space

from conftest import IMAGE_HEIGHT, IMAGE_WIDTH, SCALE, TX, TY, make_camera, project_vertices, synthetic_landmarks

GT_SHAPE = np.array([1.5, -1.0, 0.8, -0.5])
N = 11   # grid size of the conftest model


def get_camera(params):
    return get_3x4_affine_camera_matrix(params, IMAGE_WIDTH, IMAGE_HEIGHT)


def assert_non_increasing(errors):
    for before, after in zip(errors, errors[1:]):
        assert after <= before * (1.0 + 1e-3) + 1e-6


def _fit(model, blendshapes, landmarks, mapper, edge_topology, no_contour, **kwargs):
    contour_landmarks, model_contour = no_contour
    kwargs.setdefault("num_iterations", 10)
    kwargs.setdefault("lambda_", 1e-3)
    return fit_shape_and_pose(model, blendshapes, landmarks, mapper, IMAGE_WIDTH, IMAGE_HEIGHT,
                              edge_topology, contour_landmarks, model_contour, **kwargs)


def test_recovers_shape_and_pose(model, landmark_vertices, mapper, edge_topology, no_contour):
    landmarks = synthetic_landmarks(model, landmark_vertices, GT_SHAPE)
    result = _fit(model, [], landmarks, mapper, edge_topology, no_contour)

    np.testing.assert_allclose(result.shape_coefficients, GT_SHAPE, atol=0.05)
    assert result.blendshape_coefficients.shape == (0,)
    yaw, pitch, roll = result.rendering_params.get_yaw_pitch_roll()
    assert max(abs(yaw), abs(pitch), abs(roll)) < 1.0
    assert result.rendering_params.scale == pytest.approx(SCALE, rel=1e-2)
    assert result.rendering_params.t_x == pytest.approx(TX, abs=0.05)
    assert result.rendering_params.t_y == pytest.approx(TY, abs=0.05)
    assert len(result.reprojection_errors) == 10
    assert result.reprojection_errors[-1] < 0.5


def test_reprojection_error_does_not_grow(model, landmark_vertices, mapper, edge_topology, no_contour):
    landmarks = synthetic_landmarks(model, landmark_vertices, GT_SHAPE)
    errors = _fit(model, [], landmarks, mapper, edge_topology, no_contour).reprojection_errors
    assert errors[-1] <= errors[0] + 1e-6
    assert_non_increasing(errors)


def test_recovers_rotated_pose(model, landmark_vertices, mapper, edge_topology, no_contour):
    params = make_camera(yaw=20.0, pitch=-10.0, roll=5.0)
    landmarks = synthetic_landmarks(model, landmark_vertices, params=params)
    result = _fit(model, [], landmarks, mapper, edge_topology, no_contour, num_iterations=3)
    np.testing.assert_allclose(result.rendering_params.get_yaw_pitch_roll(), (20.0, -10.0, 5.0), atol=0.5)


def test_recovers_expression(model, blendshapes, landmark_vertices, mapper, edge_topology, no_contour):
    weights = np.array([0.6, 0.3])
    landmarks = synthetic_landmarks(model, landmark_vertices, GT_SHAPE, blendshapes, weights)
    result = _fit(model, blendshapes, landmarks, mapper, edge_topology, no_contour, num_iterations=15)

    assert np.all(result.blendshape_coefficients >= 0.0)
    np.testing.assert_allclose(result.blendshape_coefficients, weights, atol=0.1)
    assert result.reprojection_errors[-1] < 0.5


def test_fit_is_deterministic(model, blendshapes, landmark_vertices, mapper, edge_topology, no_contour):
    landmarks = synthetic_landmarks(model, landmark_vertices, GT_SHAPE, blendshapes, [0.2, 0.4])
    first = _fit(model, blendshapes, landmarks, mapper, edge_topology, no_contour, num_iterations=3)
    second = _fit(model, blendshapes, landmarks, mapper, edge_topology, no_contour, num_iterations=3)
    np.testing.assert_array_equal(first.shape_coefficients, second.shape_coefficients)
    np.testing.assert_array_equal(first.blendshape_coefficients, second.blendshape_coefficients)
    np.testing.assert_array_equal(first.mesh.vertices, second.mesh.vertices)
    assert first.reprojection_errors == second.reprojection_errors


def test_unmapped_landmark_is_skipped(model, landmark_vertices, mapper, edge_topology, no_contour):
    landmarks = synthetic_landmarks(model, landmark_vertices, GT_SHAPE)
    with_extra = landmarks + [Landmark("999", (5.0, 5.0))]
    plain = _fit(model, [], landmarks, mapper, edge_topology, no_contour, num_iterations=3)
    extra = _fit(model, [], with_extra, mapper, edge_topology, no_contour, num_iterations=3)
    np.testing.assert_array_equal(plain.shape_coefficients, extra.shape_coefficients)
    assert plain.reprojection_errors == extra.reprojection_errors


def test_zero_iterations_returns_initial_estimate(model, landmark_vertices, mapper, edge_topology, no_contour):
    landmarks = synthetic_landmarks(model, landmark_vertices)
    result = _fit(model, [], landmarks, mapper, edge_topology, no_contour, num_iterations=0)
    assert result.reprojection_errors == ()
    np.testing.assert_array_equal(result.shape_coefficients, np.zeros(4))


def test_leading_coefficients_only(model, landmark_vertices, mapper, edge_topology, no_contour):
    landmarks = synthetic_landmarks(model, landmark_vertices, GT_SHAPE)
    result = _fit(model, [], landmarks, mapper, edge_topology, no_contour,
                  num_iterations=2, num_shape_coefficients=2)
    assert result.shape_coefficients.shape == (2,)


def test_too_few_landmarks(model, landmark_vertices, mapper, edge_topology, no_contour):
    landmarks = synthetic_landmarks(model, landmark_vertices)[:2]
    with pytest.raises(UnderdeterminedFitError):
        _fit(model, [], landmarks, mapper, edge_topology, no_contour)


def test_invalid_inputs(model, landmark_vertices, mapper, edge_topology, no_contour):
    landmarks = synthetic_landmarks(model, landmark_vertices)
    with pytest.raises(InvalidInputError):
        _fit(model, [], [], mapper, edge_topology, no_contour)
    with pytest.raises(InvalidInputError):
        _fit(model, [Blendshape("bad", np.zeros(12))], landmarks, mapper, edge_topology, no_contour)
    with pytest.raises(InvalidInputError):
        _fit(model, [], landmarks, LandmarkMapper({"1": 10_000}), edge_topology, no_contour)
    with pytest.raises(InvalidInputError):
        _fit(model, [], landmarks, mapper, edge_topology, no_contour, num_shape_coefficients=99)
    with pytest.raises(InvalidInputError):
        _fit(model, [], landmarks, mapper, edge_topology, no_contour, num_iterations=-1)


def test_fixed_correspondences_leave_out_contour_landmarks(mapper):
    landmarks = [Landmark("1", (1.0, 2.0)), Landmark("2", (3.0, 4.0)), Landmark("abc", (0.0, 0.0))]
    correspondences = fixed_correspondences(landmarks, mapper, ContourLandmarks(right_contour=("1",)))
    assert len(correspondences) == 1
    assert correspondences.vertex_indices[0] == mapper.convert("2")
    np.testing.assert_array_equal(correspondences.image_points, [[3.0, 4.0]])


def test_shape_fit_with_known_camera(model, landmark_vertices):
    params = make_camera()
    camera = get_camera(params)
    landmarks = synthetic_landmarks(model, landmark_vertices, GT_SHAPE, params=params)
    points = np.array([lm.coordinates for lm in landmarks])

    exact = fit_shape_to_landmarks_linear(model.shape_model, camera, points, landmark_vertices, lambda_=0.0)
    np.testing.assert_allclose(exact, GT_SHAPE, atol=1e-8)

    shrunk = fit_shape_to_landmarks_linear(model.shape_model, camera, points, landmark_vertices, lambda_=1e6)
    assert np.linalg.norm(shrunk) < np.linalg.norm(exact)


def test_blendshape_fit_is_non_negative(model, blendshapes, landmark_vertices):
    params = make_camera()
    camera = get_camera(params)
    shape = model.shape_model.mean
    observed = shape + 0.5 * blendshapes[0].deformation - 0.5 * blendshapes[1].deformation
    points = project_vertices(observed.reshape(-1, 3)[landmark_vertices], params)

    weights = fit_blendshapes_to_landmarks_nnls(blendshapes, shape, camera, points, landmark_vertices)
    assert weights.shape == (2,)
    assert np.all(weights >= 0.0)
    assert weights[1] == 0.0
    assert weights[0] > 0.0


def test_contour_landmarks_match_the_silhouette(model, landmark_vertices, mapper, edge_topology):
    n = 11
    right = tuple(r * n + c for r in range(n) for c in (n - 2, n - 1))
    model_contour = ModelContour(right_contour=right, left_contour=tuple(r * n for r in range(n)))
    contour_landmarks = ContourLandmarks(right_contour=("100",), left_contour=("101",))

    params = make_camera(yaw=30.0)
    landmarks = synthetic_landmarks(model, landmark_vertices, params=params)
    side_point = project_vertices(model.shape_model.mean.reshape(-1, 3)[[5 * n + n - 1]], params)[0]
    landmarks += [Landmark("100", side_point), Landmark("101", (0.0, 0.0))]

    problem = FittingProblem.create(model, [], landmarks, mapper, IMAGE_WIDTH, IMAGE_HEIGHT,
                                    edge_topology, contour_landmarks, model_contour)
    assert len(problem.fixed_correspondences) == 68

    state = initial_state(problem)
    contour = contour_correspondences(problem, state.mesh, state.rendering_params)
    # only the right side has candidates on the silhouette at this yaw
    assert len(contour) == 1
    assert contour.vertex_indices[0] in right
    np.testing.assert_allclose(contour.image_points[0], side_point)


def half_face_contour():
    """Right contour: columns right of the centre line, left contour: columns left of it."""
    right = tuple(r * N + c for r in range(N) for c in range(N // 2 + 1, N))
    left = tuple(r * N + c for r in range(N) for c in range(N // 2))
    return ModelContour(right_contour=right, left_contour=left)


def silhouette(vertices, params, edge_topology, triangles):
    front_facing = ccw_in_screen_space(project_vertices(vertices, params), triangles)
    return occluding_boundary_vertices(edge_topology, front_facing)


def contour_landmarks_at(vertices, params, right_vertices, left_vertices):
    right = [Landmark(f"r{v}", p) for v, p in zip(right_vertices, project_vertices(vertices[right_vertices], params))]
    left = [Landmark(f"l{v}", p) for v, p in zip(left_vertices, project_vertices(vertices[left_vertices], params))]
    names = ContourLandmarks(right_contour=[lm.name for lm in right], left_contour=[lm.name for lm in left])
    return right + left, names


def test_contour_fit_converges_over_iterations(model, landmark_vertices, mapper, edge_topology):
    params = make_camera(yaw=40.0)
    shape = 0.1 * GT_SHAPE
    model_contour = half_face_contour()
    triangles = model.shape_model.triangle_list
    true_vertices = model.shape_model.draw_sample(shape).reshape(-1, 3)
    mean_vertices = model.shape_model.mean.reshape(-1, 3)

    # right-side outline vertices of both the mean and the true face, away from the top and bottom rows
    on_both = np.intersect1d(silhouette(true_vertices, params, edge_topology, triangles),
                             silhouette(mean_vertices, params, edge_topology, triangles))
    outline = [int(v) for v in on_both if v in model_contour.right_contour and 3 <= v // N <= 7]
    assert len(outline) >= 3
    near_border = [r * N for r in range(3, 8)]

    contour, contour_landmarks = contour_landmarks_at(true_vertices, params, outline, near_border)
    landmarks = synthetic_landmarks(model, landmark_vertices, shape, params=params) + contour

    result = fit_shape_and_pose(model, [], landmarks, mapper, IMAGE_WIDTH, IMAGE_HEIGHT, edge_topology,
                                contour_landmarks, model_contour, num_iterations=10, lambda_=1e-3)

    np.testing.assert_allclose(result.rendering_params.get_yaw_pitch_roll(), (40.0, 0.0, 0.0), atol=0.5)
    np.testing.assert_allclose(result.shape_coefficients, shape, atol=0.02)
    assert_non_increasing(result.reprojection_errors)
    assert result.reprojection_errors[-1] < 0.2


def test_near_side_contour_landmarks_never_pull_the_fit(model, landmark_vertices, mapper, edge_topology):
    params = make_camera(yaw=30.0)
    model_contour = half_face_contour()
    rows = [1, 3, 5, 7, 9]
    vertices = model.shape_model.draw_sample(GT_SHAPE).reshape(-1, 3)
    contour, contour_landmarks = contour_landmarks_at(
        vertices, params, [r * N + N - 1 for r in rows], [r * N for r in rows])
    landmarks = synthetic_landmarks(model, landmark_vertices, GT_SHAPE, params=params) + contour

    problem = FittingProblem.create(model, [], landmarks, mapper, IMAGE_WIDTH, IMAGE_HEIGHT,
                                    edge_topology, contour_landmarks, model_contour, lambda_=1e-3)
    num_fixed = len(problem.fixed_correspondences)
    state = initial_state(problem)
    for _ in range(6):
        state, correspondences = fit_iteration(problem, state)
        matched = correspondences.vertex_indices[num_fixed:]
        assert set(matched.tolist()) <= set(model_contour.right_contour)

    yaw, pitch, roll = state.rendering_params.get_yaw_pitch_roll()
    assert yaw == pytest.approx(30.0, abs=2.0)


def test_contour_distance_threshold_is_validated(model, landmark_vertices, mapper, edge_topology, no_contour):
    landmarks = synthetic_landmarks(model, landmark_vertices)
    with pytest.raises(InvalidInputError):
        _fit(model, [], landmarks, mapper, edge_topology, no_contour, contour_max_distance=0.0)
    result = _fit(model, [], landmarks, mapper, edge_topology, no_contour,
                  num_iterations=1, contour_max_distance=None)
    assert len(result.reprojection_errors) == 1
