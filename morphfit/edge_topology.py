"""
edge_topology.py
──────────────────────────────────────────────────────────────
Edge → adjacent-triangle table of a model's triangle list.

With it the occluding boundary of a posed mesh is found in one
pass over the edges: an edge is on the silhouette when one of its
two triangles faces the camera and the other does not.

On disk (JSON) the table is 1-based with 0 meaning "no triangle",
in memory it is 0-based with -1 meaning "no triangle".
──────────────────────────────────────────────────────────────
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import numpy.typing as npt
import trimesh

from morphfit.errors import InvalidInputError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class EdgeTopology:
    """
    :param adjacent_faces:    (E, 2) triangle indices on either side of each edge, -1 if none
    :param adjacent_vertices: (E, 2) the two vertex indices of each edge
    """
    adjacent_faces: np.ndarray
    adjacent_vertices: np.ndarray

    def __post_init__(self) -> None:
        faces = np.array(self.adjacent_faces, dtype=np.int64).reshape(-1, 2)
        vertices = np.array(self.adjacent_vertices, dtype=np.int64).reshape(-1, 2)
        if len(faces) != len(vertices):
            raise InvalidInputError(
                f"{len(faces)} face pairs for {len(vertices)} edges in edge topology")
        faces.setflags(write=False)
        vertices.setflags(write=False)
        object.__setattr__(self, "adjacent_faces", faces)
        object.__setattr__(self, "adjacent_vertices", vertices)

    @property
    def num_edges(self) -> int:
        return len(self.adjacent_vertices)

    def validate(self, num_vertices: int, num_triangles: int) -> None:
        """Raise InvalidInputError if any index does not exist in the model."""
        if self.num_edges == 0:
            return
        if self.adjacent_vertices.min() < 0 or self.adjacent_vertices.max() >= num_vertices:
            raise InvalidInputError("edge topology references a vertex outside the model")
        if self.adjacent_faces.min() < -1 or self.adjacent_faces.max() >= num_triangles:
            raise InvalidInputError("edge topology references a triangle outside the model")

    @classmethod
    def load(cls, path: str | Path) -> "EdgeTopology":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Edge topology file not found: {path}")
        try:
            data = json.loads(path.read_text())["edge_topology"]
            faces = np.asarray(data["adjacent_faces"], dtype=np.int64).reshape(-1, 2)
            vertices = np.asarray(data["adjacent_vertices"], dtype=np.int64).reshape(-1, 2)
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidInputError(f"{path}: malformed edge topology ({e})") from e
        topology = cls(adjacent_faces=faces - 1, adjacent_vertices=vertices - 1)
        logger.info("loaded edge topology with %d edges from %s", topology.num_edges, path)
        return topology

    def save(self, path: str | Path) -> None:
        data = {"edge_topology": {
            "adjacent_faces": (self.adjacent_faces + 1).tolist(),
            "adjacent_vertices": (self.adjacent_vertices + 1).tolist(),
        }}
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        Path(path).write_text(json.dumps(data))


def generate_edge_topology(triangles: npt.ArrayLike, num_vertices: int | None = None) -> EdgeTopology:
    """
    Build the edge table from a triangle list.

    Interior edges come from trimesh's face adjacency; border edges (used by
    a single triangle) get -1 as their second face.
    """
    triangles = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)
    if num_vertices is None:
        num_vertices = int(triangles.max()) + 1 if triangles.size else 0
    # Only the connectivity matters here, so the vertex positions are dummies
    tm = trimesh.Trimesh(vertices=np.zeros((num_vertices, 3)), faces=triangles, process=False)

    interior_faces = np.asarray(tm.face_adjacency, dtype=np.int64).reshape(-1, 2)
    interior_edges = np.sort(np.asarray(tm.face_adjacency_edges, dtype=np.int64).reshape(-1, 2), axis=1)

    border = trimesh.grouping.group_rows(tm.edges_sorted, require_count=1)
    border = np.asarray(border, dtype=np.int64).reshape(-1)
    border_edges = np.asarray(tm.edges_sorted[border], dtype=np.int64).reshape(-1, 2)
    border_faces = np.column_stack([tm.edges_face[border], np.full(len(border), -1)]).astype(np.int64)

    topology = EdgeTopology(
        adjacent_faces=np.vstack([interior_faces, border_faces]),
        adjacent_vertices=np.vstack([interior_edges, border_edges]),
    )
    logger.debug("generated edge topology: %d interior, %d border edges",
                 len(interior_edges), len(border_edges))
    return topology


def occluding_boundary_vertices(edge_topology: EdgeTopology, front_facing: npt.ArrayLike) -> np.ndarray:
    """
    Vertices on the occluding (silhouette) boundary of the posed mesh.

    :param front_facing: (T,) bool, result of the screen-space orientation test
    :return: sorted unique vertex indices of edges whose two triangles
        disagree on facing; border edges are ignored
    """
    front_facing = np.asarray(front_facing, dtype=bool)
    faces = edge_topology.adjacent_faces
    interior = (faces[:, 0] >= 0) & (faces[:, 1] >= 0)
    faces = faces[interior]
    occluding = front_facing[faces[:, 0]] != front_facing[faces[:, 1]]
    return np.unique(edge_topology.adjacent_vertices[interior][occluding])
