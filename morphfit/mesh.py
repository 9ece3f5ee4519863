"""Triangle mesh container produced by the morphable model."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np
import numpy.typing as npt
import trimesh
from trimesh.exchange.obj import export_obj

from morphfit.errors import InvalidInputError

logger = logging.getLogger(__name__)


def _frozen(array: Optional[npt.ArrayLike], dtype) -> Optional[np.ndarray]:
    if array is None:
        return None
    out = np.array(array, dtype=dtype)   # always a private copy
    out.setflags(write=False)
    return out


@dataclass(frozen=True, eq=False)
class Mesh:
    """
    A face mesh instance.

    :param vertices:  (V, 3) vertex positions
    :param colors:    (V, 3) per-vertex RGB in [0, 1], or None
    :param triangles: (T, 3) vertex indices, shared by every instance of a model
    :param texcoords: (V, 2) UV coordinates in [0, 1] (origin top-left), or None

    The arrays are copied and made read-only on construction.
    """
    vertices: np.ndarray
    colors: Optional[np.ndarray]
    triangles: np.ndarray
    texcoords: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        vertices = _frozen(self.vertices, np.float64)
        triangles = _frozen(self.triangles, np.int64)
        colors = _frozen(self.colors, np.float64)
        texcoords = _frozen(self.texcoords, np.float64)

        if vertices.ndim != 2 or vertices.shape[1] != 3:
            raise InvalidInputError(f"vertices must be (V, 3), got {vertices.shape}")
        if triangles.ndim != 2 or triangles.shape[1] != 3:
            raise InvalidInputError(f"triangles must be (T, 3), got {triangles.shape}")
        if triangles.size and (triangles.min() < 0 or triangles.max() >= len(vertices)):
            raise InvalidInputError("triangle index out of range of the vertex list")
        if colors is not None and colors.shape != vertices.shape:
            raise InvalidInputError(f"colors must be {vertices.shape}, got {colors.shape}")
        if texcoords is not None and texcoords.shape != (len(vertices), 2):
            raise InvalidInputError(f"texcoords must be ({len(vertices)}, 2), got {texcoords.shape}")

        object.__setattr__(self, "vertices", vertices)
        object.__setattr__(self, "triangles", triangles)
        object.__setattr__(self, "colors", colors)
        object.__setattr__(self, "texcoords", texcoords)

    @property
    def num_vertices(self) -> int:
        return len(self.vertices)

    @property
    def num_triangles(self) -> int:
        return len(self.triangles)


def write_obj(mesh: Mesh, path: str | Path, texture_path: Optional[str | Path] = None) -> None:
    """
    Write the mesh as .obj.

    With ``texture_path`` the texture coordinates are written as well, and a
    ``<stem>.mtl`` next to the obj whose ``map_Kd`` names the texture by its
    file name, so the texture is expected in the same directory.  Without
    it, vertex colours are written when present.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tm = trimesh.Trimesh(vertices=mesh.vertices, faces=mesh.triangles, process=False)

    if texture_path is None:
        if mesh.colors is not None:
            tm.visual.vertex_colors = np.clip(mesh.colors * 255.0, 0, 255).astype(np.uint8)
        path.write_text(export_obj(tm))
        logger.debug("wrote mesh with %d vertices to %s", mesh.num_vertices, path)
        return

    if mesh.texcoords is None:
        raise InvalidInputError("a textured .obj needs texture coordinates")
    uv = mesh.texcoords.copy()
    uv[:, 1] = 1.0 - uv[:, 1]   # obj uses a bottom-left origin
    tm.visual = trimesh.visual.TextureVisuals(
        uv=uv, material=trimesh.visual.material.SimpleMaterial(name="FaceTexture"))

    mtl_name = path.with_suffix(".mtl").name
    text, files = export_obj(tm, return_texture=True, mtl_name=mtl_name)
    mtl = files[mtl_name].decode("utf-8").rstrip("\n")
    path.with_suffix(".mtl").write_text(f"{mtl}\nmap_Kd {Path(texture_path).name}\n")
    path.write_text(text)
    logger.debug("wrote textured mesh with %d vertices to %s (texture %s)",
                 mesh.num_vertices, path, Path(texture_path).name)
