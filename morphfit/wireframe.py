"""Debug drawing: mesh wireframe and landmarks on top of the input image."""
from __future__ import annotations

from typing import Sequence

import cv2
import numpy as np

from morphfit import config
from morphfit.camera import project
from morphfit.landmarks import Landmark
from morphfit.mesh import Mesh
from morphfit.orientation import ccw_in_screen_space


def draw_wireframe(image: np.ndarray,
                   mesh: Mesh,
                   modelview: np.ndarray,
                   projection: np.ndarray,
                   viewport: np.ndarray,
                   colour: Sequence[int] = config.WIREFRAME_COLOUR) -> None:
    """
    Draw the edges of every front-facing triangle into ``image`` (in place).

    Back-facing triangles are culled with the same screen-space test the
    texture extraction uses.
    """
    points = project(mesh.vertices, modelview, projection, viewport)[:, :2]
    front_facing = ccw_in_screen_space(points, mesh.triangles)
    pixels = np.rint(points).astype(np.int64)
    colour = tuple(int(c) for c in colour)

    for tri in mesh.triangles[front_facing]:
        p1, p2, p3 = (tuple(int(v) for v in pixels[i]) for i in tri)
        cv2.line(image, p1, p2, colour)
        cv2.line(image, p2, p3, colour)
        cv2.line(image, p3, p1, colour)


def draw_landmarks(image: np.ndarray,
                   landmarks: Sequence[Landmark],
                   colour: Sequence[int] = config.LANDMARK_COLOUR,
                   half_size: int = 2) -> None:
    """Mark each landmark with a small square (in place)."""
    colour = tuple(int(c) for c in colour)
    for lm in landmarks:
        x, y = (int(round(v)) for v in lm.coordinates)
        cv2.rectangle(image, (x - half_size, y - half_size), (x + half_size, y + half_size), colour)
