"""
morphfit: fit a 3D morphable face model and camera to 2D landmarks and
extract the face texture as an isomap.
"""
from morphfit.camera import (
    CameraType,
    RenderingParameters,
    get_3x4_affine_camera_matrix,
    get_opencv_viewport,
)
from morphfit.contour import ContourLandmarks, ModelContour
from morphfit.edge_topology import EdgeTopology, generate_edge_topology
from morphfit.errors import InvalidInputError, MorphfitError, UnderdeterminedFitError
from morphfit.fitting import FittingResult, fit_shape_and_pose
from morphfit.landmarks import Landmark, LandmarkMapper, read_pts_landmarks
from morphfit.mesh import Mesh, write_obj
from morphfit.morphablemodel import Blendshape, MorphableModel, PcaModel, load_blendshapes, load_model
from morphfit.texture import extract_texture
from morphfit.wireframe import draw_landmarks, draw_wireframe

__version__ = "0.1.0"
