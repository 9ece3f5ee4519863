"""
Default paths and fitting constants.

The asset paths point at the ``share/`` directory next to the repository
root, the same layout the fitting scripts assume.  Everything here can be
overridden from the command line of ``fit_model.py``.
"""
from pathlib import Path

# ─────────── Asset paths ───────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent
SHARE_DIR = PROJECT_ROOT / "share"

MODEL_PATH = SHARE_DIR / "sfm_shape_3448.npz"
BLENDSHAPES_PATH = SHARE_DIR / "expression_blendshapes_3448.npz"
MAPPING_PATH = SHARE_DIR / "ibug_to_sfm.toml"
MODEL_CONTOUR_PATH = SHARE_DIR / "sfm_model_contours.json"
EDGE_TOPOLOGY_PATH = SHARE_DIR / "sfm_3448_edge_topology.json"

IMAGE_PATH = PROJECT_ROOT / "data" / "image_0010.png"
LANDMARKS_PATH = PROJECT_ROOT / "data" / "image_0010.pts"
OUTPUT_BASENAME = "out"

# ─────────── Fitting ───────────
NUM_ITERATIONS = 5
SHAPE_LAMBDA = 30.0            # Tikhonov weight for the PCA shape coefficients
MIN_CORRESPONDENCES = 4        # the affine camera has 8 unknowns, 2 equations per point
CONTOUR_MAX_DISTANCE = 64.0    # pixels between a contour landmark and its silhouette vertex

# ─────────── Texture / drawing ───────────
ISOMAP_RESOLUTION = 512
WIREFRAME_COLOUR = (0, 255, 0, 255)   # BGR(A), as OpenCV expects
LANDMARK_COLOUR = (255, 0, 0)
