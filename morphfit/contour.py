"""
contour.py
──────────────────────────────────────────────────────────────
Face-contour definitions and the contour correspondence search.

• ModelContour      : per side, the model vertices that may form the
                      face outline (ordered).
• ContourLandmarks  : per side, which landmark identifiers sit on the
                      outline (ibug 1-8 right, 10-17 left).

Which vertex forms the outline depends on the head pose, so contour
landmarks are not mapped to a fixed vertex.  Every iteration they are
matched to the nearest projected candidate that currently lies on the
occluding boundary.  Only the side turning away from the camera has its
outline on that boundary, and a match farther than a pixel threshold is
dropped rather than pulling the fit towards a stray silhouette vertex.
──────────────────────────────────────────────────────────────
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import numpy.typing as npt

from morphfit.errors import InvalidInputError
from morphfit.landmarks import Landmark, load_toml

logger = logging.getLogger(__name__)

RIGHT = "right"
LEFT = "left"


@dataclass(frozen=True)
class ModelContour:
    """Candidate outline vertices of the model, one ordered list per side."""
    right_contour: tuple[int, ...] = ()
    left_contour: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "right_contour", tuple(int(v) for v in self.right_contour))
        object.__setattr__(self, "left_contour", tuple(int(v) for v in self.left_contour))

    def side(self, side: str) -> tuple[int, ...]:
        return self.right_contour if side == RIGHT else self.left_contour

    def validate(self, num_vertices: int) -> None:
        for v in self.right_contour + self.left_contour:
            if not 0 <= v < num_vertices:
                raise InvalidInputError(f"contour vertex {v} is not a vertex of the model")

    @classmethod
    def load(cls, path: str | Path) -> "ModelContour":
        """Read ``{"model_contour": {"right_contour": [...], "left_contour": [...]}}``."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Model contour file not found: {path}")
        try:
            data = json.loads(path.read_text())["model_contour"]
            contour = cls(data["right_contour"], data["left_contour"])
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidInputError(f"{path}: malformed model contour ({e})") from e
        logger.info("loaded model contour from %s (%d right, %d left)",
                    path, len(contour.right_contour), len(contour.left_contour))
        return contour


@dataclass(frozen=True)
class ContourLandmarks:
    """Landmark identifiers on the face outline, one list per side."""
    right_contour: tuple[str, ...] = ()
    left_contour: tuple[str, ...] = ()
    _sides: dict = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        right = tuple(str(n) for n in self.right_contour)
        left = tuple(str(n) for n in self.left_contour)
        sides = {n: RIGHT for n in right}
        sides.update({n: LEFT for n in left})
        object.__setattr__(self, "right_contour", right)
        object.__setattr__(self, "left_contour", left)
        object.__setattr__(self, "_sides", sides)

    def side_of(self, landmark_name: str) -> Optional[str]:
        """Side ("right" or "left") of a contour landmark, None for interior landmarks."""
        return self._sides.get(str(landmark_name))

    def is_contour_landmark(self, landmark_name: str) -> bool:
        return str(landmark_name) in self._sides

    @classmethod
    def load(cls, path: str | Path) -> "ContourLandmarks":
        """Read the ``[contour_landmarks]`` table (``right = [...]``, ``left = [...]``)."""
        data = load_toml(path)
        table = data.get("contour_landmarks")
        if table is None:
            raise InvalidInputError(f"{path}: no [contour_landmarks] table")
        return cls(table.get("right", ()), table.get("left", ()))


@dataclass(frozen=True, eq=False)
class ContourCorrespondence:
    landmark_name: str
    image_point: np.ndarray
    vertex_index: int
    distance: float


def turned_away_side(model_contour: ModelContour,
                     vertices: np.ndarray,
                     rotation: np.ndarray) -> Optional[str]:
    """
    The side of the face that is turning away from the camera.

    Its outline is the one formed by the occluding boundary; the outline of
    the side facing the camera is the border of the mesh, which is never part
    of the silhouette.

    :param vertices: (V, 3) model-space vertex positions
    :param rotation: 3x3 model rotation of the current pose
    :return: RIGHT or LEFT, None when the model contour is empty
    """
    depth = {}
    for side in (RIGHT, LEFT):
        indices = list(model_contour.side(side))
        if indices:
            depth[side] = float(np.mean(vertices[indices] @ rotation[2]))
    if not depth:
        return None
    return min(depth, key=depth.get)   # camera looks down -z, ties go to RIGHT


def find_contour_correspondence(landmark: Landmark,
                                candidates: npt.ArrayLike,
                                projected_vertices: np.ndarray,
                                max_distance: Optional[float] = None) -> Optional[ContourCorrespondence]:
    """
    Nearest projected candidate vertex to one contour landmark.

    :param candidates: vertex indices allowed for this landmark
    :param projected_vertices: (V, 2) pixel positions of all mesh vertices
    :param max_distance: pixels; a nearest candidate farther away than this is rejected
    :return: the match, or None when there is no candidate within reach
    """
    candidates = np.asarray(candidates, dtype=np.int64).reshape(-1)
    if candidates.size == 0:
        return None
    distances = np.linalg.norm(projected_vertices[candidates] - landmark.coordinates, axis=1)
    best = int(np.argmin(distances))
    if max_distance is not None and distances[best] > max_distance:
        return None
    return ContourCorrespondence(landmark.name, landmark.coordinates, int(candidates[best]),
                                 float(distances[best]))


def get_contour_correspondences(landmarks: Sequence[Landmark],
                                contour_landmarks: ContourLandmarks,
                                model_contour: ModelContour,
                                silhouette_vertices: npt.ArrayLike,
                                projected_vertices: np.ndarray,
                                sides: Sequence[str] = (RIGHT, LEFT),
                                max_distance: Optional[float] = None) -> list[ContourCorrespondence]:
    """
    Match every contour landmark to a silhouette vertex of its side.

    Only landmarks on one of ``sides`` are matched.  Landmarks without a
    candidate within ``max_distance`` (e.g. a frontal view where no contour
    vertex of that side is on the silhouette) are skipped.
    """
    silhouette = np.asarray(silhouette_vertices, dtype=np.int64)
    candidates = {
        side: np.intersect1d(np.asarray(model_contour.side(side), dtype=np.int64), silhouette)
        for side in sides
    }

    correspondences = []
    for landmark in landmarks:
        side = contour_landmarks.side_of(landmark.name)
        if side not in candidates:
            continue
        match = find_contour_correspondence(landmark, candidates[side], projected_vertices, max_distance)
        if match is None:
            logger.debug("no silhouette vertex near contour landmark %s (%s side), skipped",
                         landmark.name, side)
            continue
        correspondences.append(match)
    return correspondences
