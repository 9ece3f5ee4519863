"""
landmarks.py
──────────────────────────────────────────────────────────────
2D landmarks, the landmark-name → model-vertex mapper, the ibug
``.pts`` reader and simple landmark error metrics.
──────────────────────────────────────────────────────────────
"""
from __future__ import annotations

import logging
import tomllib
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Optional

import numpy as np
import numpy.typing as npt

from morphfit.errors import InvalidInputError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Landmark:
    """A named 2D point in 0-based pixel coordinates."""
    name: str
    coordinates: np.ndarray

    def __post_init__(self) -> None:
        coords = np.array(self.coordinates, dtype=np.float64).reshape(-1)
        if coords.shape != (2,):
            raise InvalidInputError(f"landmark '{self.name}' needs 2 coordinates, got {coords.shape}")
        if not np.isfinite(coords).all():
            raise InvalidInputError(f"landmark '{self.name}' has non-finite coordinates {coords.tolist()}")
        coords.setflags(write=False)
        object.__setattr__(self, "name", str(self.name))
        object.__setattr__(self, "coordinates", coords)


def landmarks_from_points(points: npt.ArrayLike, names: Optional[Iterable[str]] = None) -> list[Landmark]:
    """Build a landmark collection; names default to "1", "2", ... like the ibug numbering."""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if names is None:
        names = [str(i) for i in range(1, len(points) + 1)]
    names = list(names)
    if len(names) != len(points):
        raise InvalidInputError(f"{len(names)} names for {len(points)} points")
    return [Landmark(n, p) for n, p in zip(names, points)]


class LandmarkMapper:
    """
    Maps landmark identifiers (e.g. ibug "31") to model vertex indices.

    Identifiers without an entry are not an error: ``convert`` returns None
    and the caller skips the landmark.
    """

    def __init__(self, mappings: Optional[Mapping[str, int]] = None):
        self._mappings: dict[str, int] = {}
        for name, vertex in (mappings or {}).items():
            try:
                vertex = int(vertex)
            except (TypeError, ValueError):
                raise InvalidInputError(f"mapping for '{name}' is not a vertex index: {vertex!r}") from None
            if vertex < 0:
                raise InvalidInputError(f"mapping for '{name}' is negative: {vertex}")
            self._mappings[str(name)] = vertex

        self._reverse: dict[int, list[str]] = defaultdict(list)
        for name, vertex in self._mappings.items():
            self._reverse[vertex].append(name)

    @classmethod
    def load(cls, path: str | Path) -> "LandmarkMapper":
        """Read the ``[landmark_mappings]`` table of a TOML mapping file."""
        data = load_toml(path)
        if "landmark_mappings" not in data:
            raise InvalidInputError(f"{path}: no [landmark_mappings] table")
        mapper = cls(data["landmark_mappings"])
        logger.info("loaded %d landmark mappings from %s", len(mapper), path)
        return mapper

    def convert(self, landmark_name: str) -> Optional[int]:
        """Vertex index for ``landmark_name``, or None if it is not mapped."""
        return self._mappings.get(str(landmark_name))

    def landmark_names(self, vertex_index: int) -> list[str]:
        """Reverse lookup: all identifiers mapped onto ``vertex_index``."""
        return list(self._reverse.get(int(vertex_index), []))

    def max_vertex_index(self) -> int:
        return max(self._mappings.values(), default=-1)

    def __contains__(self, landmark_name: object) -> bool:
        return str(landmark_name) in self._mappings

    def __len__(self) -> int:
        return len(self._mappings)

    def __repr__(self) -> str:
        return f"LandmarkMapper({len(self)} mappings)"


def load_toml(path: str | Path) -> dict:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Mapping file not found: {path}")
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise InvalidInputError(f"{path}: {e}") from e


def read_pts_landmarks(path: str | Path) -> list[Landmark]:
    """
    Read an ibug ``.pts`` file.

    The ibug annotations use the Matlab convention (top-left pixel is
    (1, 1)), so every point is shifted by -1.  Landmarks are named "1".."N"
    in file order.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Landmark file not found: {path}")

    lines = path.read_text().splitlines()
    if len(lines) < 3 or lines[2].strip() != "{":
        raise InvalidInputError(f"{path}: missing .pts header")

    landmarks = []
    for line in lines[3:]:
        line = line.strip()
        if line == "}":
            break
        if not line:
            continue
        parts = line.split()
        try:
            x, y = float(parts[0]), float(parts[1])
        except (IndexError, ValueError):
            raise InvalidInputError(f"Landmark format error while parsing the line: {line!r}") from None
        landmarks.append(Landmark(str(len(landmarks) + 1), (x - 1.0, y - 1.0)))

    if not landmarks:
        raise InvalidInputError(f"{path}: no landmarks")
    return landmarks


# -----------------------------------------------------------------------------
#                                  Metrics
# -----------------------------------------------------------------------------

def mean_landmark_error(pred_landmarks: npt.ArrayLike, gt_landmarks: npt.ArrayLike) -> float:
    """
    Mean per-landmark Euclidean error.
    :param pred_landmarks: (N, D)
    :param gt_landmarks: (N, D)
    """
    pred = np.asarray(pred_landmarks, dtype=np.float64)
    gt = np.asarray(gt_landmarks, dtype=np.float64)
    if pred.shape != gt.shape:
        raise InvalidInputError(f"shape mismatch: {pred.shape} vs {gt.shape}")
    if pred.size == 0:
        return 0.0
    return float(np.linalg.norm(pred - gt, axis=-1).mean())


def normalised_landmark_error(pred_landmarks: npt.ArrayLike,
                              gt_landmarks: npt.ArrayLike,
                              normalisation_pair: tuple[int, int]) -> float:
    """
    Mean landmark error divided by the distance between two reference
    landmarks (typically the outer eye corners).
    """
    gt = np.asarray(gt_landmarks, dtype=np.float64)
    reference = np.linalg.norm(gt[normalisation_pair[0]] - gt[normalisation_pair[1]])
    return mean_landmark_error(pred_landmarks, gt) / (reference + 1e-8)
