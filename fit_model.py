"""
fit_model.py
──────────────────────────────────────────────────────────────
1) image + ibug .pts landmarks      → load
2) model, blendshapes, mapping,
   contour and edge topology       → load
3) shape / expression / pose fit    → mesh + camera
4) outputs (same basename)
    • <out>.png         input with landmarks + fitted wireframe
    • <out>.obj / .mtl  fitted mesh, textured with the isomap
    • <out>.isomap.png  extracted texture (alpha = viewing angle, 0 = invisible)
──────────────────────────────────────────────────────────────
Usage:
$ python fit_model.py -i data/image_0010.png -l data/image_0010.pts -o out/image_0010
"""
import argparse
import logging
import sys
from pathlib import Path

import cv2

from morphfit import config
from morphfit.camera import get_3x4_affine_camera_matrix, get_opencv_viewport
from morphfit.contour import ContourLandmarks, ModelContour
from morphfit.edge_topology import EdgeTopology
from morphfit.errors import MorphfitError
from morphfit.fitting import fit_shape_and_pose
from morphfit.landmarks import LandmarkMapper, read_pts_landmarks
from morphfit.logging_config import setup_logging
from morphfit.mesh import write_obj
from morphfit.morphablemodel import load_blendshapes, load_model
from morphfit.texture import extract_texture
from morphfit.wireframe import draw_landmarks, draw_wireframe

logger = logging.getLogger("morphfit.fit_model")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fits a 3D Morphable Model to an image with landmarks.")
    parser.add_argument("-m", "--model", default=config.MODEL_PATH, type=Path,
                        help="morphable model (.npz)")
    parser.add_argument("-i", "--image", default=config.IMAGE_PATH, type=Path,
                        help="input image")
    parser.add_argument("-l", "--landmarks", default=config.LANDMARKS_PATH, type=Path,
                        help="2D landmarks for the image, in ibug .pts format")
    parser.add_argument("-p", "--mapping", default=config.MAPPING_PATH, type=Path,
                        help="landmark identifier to model vertex mapping (.toml)")
    parser.add_argument("-c", "--model-contour", default=config.MODEL_CONTOUR_PATH, type=Path,
                        help="file with model contour indices (.json)")
    parser.add_argument("-e", "--edge-topology", default=config.EDGE_TOPOLOGY_PATH, type=Path,
                        help="file with the model's precomputed edge topology (.json)")
    parser.add_argument("-b", "--blendshapes", default=config.BLENDSHAPES_PATH, type=Path,
                        help="file with expression blendshapes (.npz)")
    parser.add_argument("-o", "--output", default=config.OUTPUT_BASENAME,
                        help="basename for the output rendering, obj and isomap files")
    parser.add_argument("-n", "--iterations", default=config.NUM_ITERATIONS, type=int,
                        help="number of fitting iterations")
    parser.add_argument("--lambda", dest="lambda_", default=config.SHAPE_LAMBDA, type=float,
                        help="shape regularisation strength")
    parser.add_argument("--isomap-resolution", default=config.ISOMAP_RESOLUTION, type=int)
    parser.add_argument("--no-view-angle", dest="view_angle", action="store_false",
                        help="plain visibility alpha in the isomap instead of the viewing angle")
    parser.add_argument("--contour-distance", default=config.CONTOUR_MAX_DISTANCE, type=float,
                        help="max pixel distance between a contour landmark and its silhouette vertex")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("--log-file", default=None, help="also write the log to this file")
    return parser.parse_args(argv)


def run_fitting(args: argparse.Namespace) -> None:
    """Load all inputs, fit, and write the three output files."""

    # 1) image + landmarks -------------------------------------------------------
    image = cv2.imread(str(args.image))
    if image is None:
        raise FileNotFoundError(f"Image not found: {args.image}")
    height, width = image.shape[:2]
    landmarks = read_pts_landmarks(args.landmarks)
    logger.info("loaded %d landmarks from %s", len(landmarks), args.landmarks)

    # 2) model and auxiliary data -------------------------------------------------
    model = load_model(args.model)
    blendshapes = load_blendshapes(args.blendshapes)
    landmark_mapper = LandmarkMapper.load(args.mapping)
    contour_landmarks = ContourLandmarks.load(args.mapping)
    model_contour = ModelContour.load(args.model_contour)
    edge_topology = EdgeTopology.load(args.edge_topology)

    # 3) fit ---------------------------------------------------------------------
    result = fit_shape_and_pose(
        model, blendshapes, landmarks, landmark_mapper,
        width, height, edge_topology, contour_landmarks, model_contour,
        num_iterations=args.iterations, lambda_=args.lambda_,
        contour_max_distance=args.contour_distance,
    )
    yaw, pitch, roll = result.rendering_params.get_yaw_pitch_roll()
    logger.info("head pose: yaw %.1f, pitch %.1f, roll %.1f degrees", yaw, pitch, roll)
    if result.reprojection_errors:
        logger.info("final mean reprojection error: %.2f px", result.reprojection_errors[-1])

    # 4) outputs -----------------------------------------------------------------
    camera_matrix = get_3x4_affine_camera_matrix(result.rendering_params, width, height)
    isomap = extract_texture(result.mesh, camera_matrix, image,
                             isomap_resolution=args.isomap_resolution,
                             compute_view_angle=args.view_angle)

    outimg = image.copy()
    draw_landmarks(outimg, landmarks)
    draw_wireframe(outimg, result.mesh,
                   result.rendering_params.get_modelview(),
                   result.rendering_params.get_projection(),
                   get_opencv_viewport(width, height))

    base = Path(args.output)
    base.parent.mkdir(parents=True, exist_ok=True)
    isomap_path = base.with_name(base.name + ".isomap.png")
    cv2.imwrite(str(base.with_name(base.name + ".png")), outimg)
    cv2.imwrite(str(isomap_path), isomap)
    write_obj(result.mesh, base.with_name(base.name + ".obj"), texture_path=isomap_path)

    logger.info("Finished fitting and wrote result mesh and isomap to files with basename %s", base)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO, args.log_file)
    try:
        run_fitting(args)
    except (FileNotFoundError, MorphfitError) as e:
        logger.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
