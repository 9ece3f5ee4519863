"""Synthetic face-like model shared by the tests (no binary assets needed)."""
import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from morphfit.camera import RenderingParameters, ScaledOrthoProjectionParameters, get_3x4_affine_camera_matrix, project_affine
from morphfit.contour import ContourLandmarks, ModelContour
from morphfit.edge_topology import generate_edge_topology
from morphfit.landmarks import LandmarkMapper, landmarks_from_points
from morphfit.morphablemodel import Blendshape, MorphableModel, PcaModel

IMAGE_WIDTH = 400
IMAGE_HEIGHT = 400
SCALE = 100.0
TX = TY = 2.0


def grid_triangles(n: int) -> np.ndarray:
    """Two triangles per cell, CCW when seen from +z with y up."""
    triangles = []
    for r in range(n - 1):
        for c in range(n - 1):
            a, b = r * n + c, r * n + c + 1
            d, e = (r + 1) * n + c, (r + 1) * n + c + 1
            triangles.append((a, d, b))
            triangles.append((b, d, e))
    return np.array(triangles)


def dome_vertices(n: int) -> np.ndarray:
    """Grid over [-1, 1]^2 (row 0 at the top) lifted onto a cylinder-like dome."""
    xs = np.linspace(-1.0, 1.0, n)
    ys = np.linspace(1.0, -1.0, n)
    X, Y = np.meshgrid(xs, ys)
    Z = np.sqrt(1.05 ** 2 - X ** 2) * (1.0 - 0.2 * Y ** 2)
    return np.column_stack([X.ravel(), Y.ravel(), Z.ravel()])


def grid_texcoords(n: int) -> np.ndarray:
    cols, rows = np.meshgrid(np.arange(n), np.arange(n))
    return np.column_stack([cols.ravel(), rows.ravel()]) / (n - 1)


def make_model(n: int = 11, num_components: int = 4, seed: int = 0) -> MorphableModel:
    rng = np.random.default_rng(seed)
    vertices = dome_vertices(n)
    num_vertices = len(vertices)
    basis, _ = np.linalg.qr(rng.standard_normal((3 * num_vertices, num_components)))
    eigenvalues = np.linspace(4.0, 0.5, num_components)
    triangles = grid_triangles(n)
    shape_model = PcaModel(vertices.ravel(), basis, eigenvalues, triangles)
    color_model = PcaModel(np.full(3 * num_vertices, 0.5), np.zeros((3 * num_vertices, 0)),
                           np.zeros(0), triangles)
    return MorphableModel(shape_model, color_model, grid_texcoords(n))


def make_camera(yaw: float = 0.0, pitch: float = 0.0, roll: float = 0.0,
                width: int = IMAGE_WIDTH, height: int = IMAGE_HEIGHT) -> RenderingParameters:
    R = Rotation.from_euler("YXZ", [yaw, pitch, roll], degrees=True).as_matrix()
    return RenderingParameters.from_ortho(ScaledOrthoProjectionParameters(R, TX, TY, SCALE), width, height)


def project_vertices(vertices: np.ndarray, params: RenderingParameters) -> np.ndarray:
    camera = get_3x4_affine_camera_matrix(params, params.screen_width, params.screen_height)
    return project_affine(vertices, camera)


@pytest.fixture
def model():
    return make_model()


@pytest.fixture
def blendshapes(model):
    rng = np.random.default_rng(1)
    num = 3 * model.shape_model.num_vertices
    return [Blendshape("smile", 0.05 * rng.standard_normal(num)),
            Blendshape("brow_raise", 0.05 * rng.standard_normal(num))]


@pytest.fixture
def landmark_vertices(model):
    rng = np.random.default_rng(2)
    return rng.choice(model.shape_model.num_vertices, size=68, replace=False)


@pytest.fixture
def mapper(landmark_vertices):
    return LandmarkMapper({str(i + 1): int(v) for i, v in enumerate(landmark_vertices)})


@pytest.fixture
def edge_topology(model):
    return generate_edge_topology(model.shape_model.triangle_list, model.shape_model.num_vertices)


@pytest.fixture
def no_contour():
    return ContourLandmarks(), ModelContour()


def synthetic_landmarks(model, landmark_vertices, shape_coefficients=None,
                        blendshapes=(), blendshape_weights=(), params=None):
    """Landmarks "1".."68" observed from a known shape and camera."""
    shape = model.shape_model.draw_sample(shape_coefficients)
    for b, w in zip(blendshapes, blendshape_weights):
        shape = shape + w * b.deformation
    params = params or make_camera()
    points = project_vertices(shape.reshape(-1, 3)[landmark_vertices], params)
    return landmarks_from_points(points)
