"""
morphablemodel.py
──────────────────────────────────────────────────────────────
PCA shape / colour models, expression blendshapes and the
``.npz`` readers for both.

A PCA model stores an orthonormal basis plus per-component
variances (eigenvalues).  Instances are generated as

    sample = mean + basis[:, :n] @ coefficients

so the coefficients live in model units; the eigenvalues are only
used to weight the regulariser during fitting.
──────────────────────────────────────────────────────────────
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import numpy.typing as npt

from morphfit.errors import InvalidInputError
from morphfit.mesh import Mesh

logger = logging.getLogger(__name__)


def _readonly(array: npt.ArrayLike, dtype) -> np.ndarray:
    out = np.array(array, dtype=dtype)
    out.setflags(write=False)
    return out


@dataclass(frozen=True, eq=False)
class PcaModel:
    """
    :param mean:              (3V,) flattened [x0, y0, z0, x1, ...] (or [r, g, b, ...])
    :param orthonormal_basis: (3V, K) basis with orthonormal columns
    :param eigenvalues:       (K,) variance of each component
    :param triangle_list:     (T, 3) vertex indices
    """
    mean: np.ndarray
    orthonormal_basis: np.ndarray
    eigenvalues: np.ndarray
    triangle_list: np.ndarray

    def __post_init__(self) -> None:
        mean = _readonly(self.mean, np.float64).reshape(-1)
        basis = _readonly(self.orthonormal_basis, np.float64)
        eigenvalues = _readonly(self.eigenvalues, np.float64).reshape(-1)
        triangles = _readonly(self.triangle_list, np.int64).reshape(-1, 3)

        if mean.size % 3 != 0:
            raise InvalidInputError(f"mean length {mean.size} is not a multiple of 3")
        if basis.size == 0:
            basis = _readonly(np.zeros((mean.size, 0)), np.float64)
        if basis.ndim != 2 or basis.shape[0] != mean.size:
            raise InvalidInputError(
                f"basis must have {mean.size} rows, got shape {basis.shape}")
        if eigenvalues.size != basis.shape[1]:
            raise InvalidInputError(
                f"{eigenvalues.size} eigenvalues for {basis.shape[1]} basis vectors")
        gram = basis.T @ basis
        if not np.allclose(gram, np.eye(basis.shape[1]), atol=1e-4):
            raise InvalidInputError(
                "basis columns are not orthonormal (max deviation of B^T B from I: "
                f"{np.abs(gram - np.eye(basis.shape[1])).max():.3g})")
        if np.any(eigenvalues <= 0):
            raise InvalidInputError("eigenvalues must be strictly positive")
        num_vertices = mean.size // 3
        if triangles.size and (triangles.min() < 0 or triangles.max() >= num_vertices):
            raise InvalidInputError("triangle index out of range of the vertex list")

        object.__setattr__(self, "mean", mean)
        object.__setattr__(self, "orthonormal_basis", basis)
        object.__setattr__(self, "eigenvalues", eigenvalues)
        object.__setattr__(self, "triangle_list", triangles)

    @property
    def num_vertices(self) -> int:
        return self.mean.size // 3

    @property
    def num_principal_components(self) -> int:
        return self.orthonormal_basis.shape[1]

    def is_empty(self) -> bool:
        return self.mean.size == 0

    def get_rescaled_basis(self) -> np.ndarray:
        """Basis columns scaled by the standard deviation of each component."""
        return self.orthonormal_basis * np.sqrt(self.eigenvalues)[np.newaxis, :]

    def get_mean_at_point(self, vertex_index: int) -> np.ndarray:
        return self.mean[3 * vertex_index:3 * vertex_index + 3]

    def get_basis_at_point(self, vertex_index: int) -> np.ndarray:
        """(3, K) rows of the orthonormal basis belonging to one vertex."""
        return self.orthonormal_basis[3 * vertex_index:3 * vertex_index + 3, :]

    def draw_sample(self, coefficients: Optional[npt.ArrayLike] = None) -> np.ndarray:
        """
        Linear combination ``mean + basis @ coefficients``.

        Fewer coefficients than components use the leading part of the basis;
        the missing ones are implicitly zero.
        """
        if coefficients is None:
            return self.mean.copy()
        coefficients = np.asarray(coefficients, dtype=np.float64).reshape(-1)
        if coefficients.size > self.num_principal_components:
            raise InvalidInputError(
                f"{coefficients.size} coefficients for a model with "
                f"{self.num_principal_components} components")
        return self.mean + self.orthonormal_basis[:, :coefficients.size] @ coefficients


@dataclass(frozen=True, eq=False)
class Blendshape:
    """One expression: a name and a (3V,) vertex offset vector."""
    name: str
    deformation: np.ndarray

    def __post_init__(self) -> None:
        object.__setattr__(self, "deformation", _readonly(self.deformation, np.float64).reshape(-1))


def blendshapes_to_basis(blendshapes: Sequence[Blendshape], num_rows: Optional[int] = None) -> np.ndarray:
    """Stack the blendshape offsets into a (3V, B) matrix."""
    if not blendshapes:
        return np.zeros((num_rows or 0, 0))
    return np.column_stack([b.deformation for b in blendshapes])


@dataclass(frozen=True, eq=False)
class MorphableModel:
    """Shape model, (possibly empty) colour model and the fixed UV layout."""
    shape_model: PcaModel
    color_model: Optional[PcaModel] = None
    texture_coordinates: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        num_vertices = self.shape_model.num_vertices
        if self.color_model is not None and not self.color_model.is_empty():
            if self.color_model.num_vertices != num_vertices:
                raise InvalidInputError(
                    f"colour model has {self.color_model.num_vertices} vertices, "
                    f"shape model has {num_vertices}")
        if self.texture_coordinates is not None:
            tc = _readonly(self.texture_coordinates, np.float64)
            if tc.size == 0:
                tc = None
            elif tc.shape != (num_vertices, 2):
                raise InvalidInputError(
                    f"texture coordinates must be ({num_vertices}, 2), got {tc.shape}")
            object.__setattr__(self, "texture_coordinates", tc)

    def has_color_model(self) -> bool:
        return self.color_model is not None and not self.color_model.is_empty()

    def get_mean(self) -> Mesh:
        return self.draw_sample()

    def draw_sample(self,
                    shape_coefficients: Optional[npt.ArrayLike] = None,
                    color_coefficients: Optional[npt.ArrayLike] = None) -> Mesh:
        shape = self.shape_model.draw_sample(shape_coefficients)
        color = self.color_model.draw_sample(color_coefficients) if self.has_color_model() else None
        return sample_to_mesh(shape, color, self.shape_model.triangle_list, self.texture_coordinates)


def sample_to_mesh(shape: npt.ArrayLike,
                   color: Optional[npt.ArrayLike],
                   triangles: npt.ArrayLike,
                   texture_coordinates: Optional[npt.ArrayLike] = None) -> Mesh:
    """Reshape flattened (3V,) shape/colour samples into a Mesh."""
    vertices = np.asarray(shape, dtype=np.float64).reshape(-1, 3)
    colors = None if color is None else np.clip(np.asarray(color, dtype=np.float64).reshape(-1, 3), 0.0, 1.0)
    return Mesh(vertices=vertices, colors=colors, triangles=triangles, texcoords=texture_coordinates)


# -----------------------------------------------------------------------------
#                                  Loaders
# -----------------------------------------------------------------------------

def _require(data, key: str, path: Path) -> np.ndarray:
    if key not in data:
        raise InvalidInputError(f"{path}: missing array '{key}'. Keys: {list(data.files)}")
    return data[key]


def load_model(path: str | Path) -> MorphableModel:
    """
    Load a morphable model from an ``.npz`` archive.

    Required keys: ``shape_mean``, ``shape_basis``, ``shape_eigenvalues``,
    ``triangle_list``.  Optional: ``color_mean``, ``color_basis``,
    ``color_eigenvalues``, ``texture_coordinates``.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Model file not found: {path}")

    with np.load(path, allow_pickle=False) as data:
        triangles = _require(data, "triangle_list", path)
        shape_model = PcaModel(
            mean=_require(data, "shape_mean", path),
            orthonormal_basis=_require(data, "shape_basis", path),
            eigenvalues=_require(data, "shape_eigenvalues", path),
            triangle_list=triangles,
        )
        color_model = None
        if "color_mean" in data and data["color_mean"].size:
            color_model = PcaModel(
                mean=data["color_mean"],
                orthonormal_basis=data["color_basis"] if "color_basis" in data else np.zeros((0, 0)),
                eigenvalues=data["color_eigenvalues"] if "color_eigenvalues" in data else np.zeros(0),
                triangle_list=triangles,
            )
        texcoords = data["texture_coordinates"] if "texture_coordinates" in data else None

    model = MorphableModel(shape_model, color_model, texcoords)
    logger.info("loaded model from %s: %d vertices, %d shape components",
                path, shape_model.num_vertices, shape_model.num_principal_components)
    return model


def load_blendshapes(path: str | Path) -> list[Blendshape]:
    """
    Load expression blendshapes from an ``.npz`` archive with ``names`` (B,)
    and ``deformations`` (B, 3V).
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Blendshape file not found: {path}")

    with np.load(path, allow_pickle=False) as data:
        names = _require(data, "names", path)
        deformations = np.atleast_2d(_require(data, "deformations", path))

    if len(names) != len(deformations):
        raise InvalidInputError(f"{path}: {len(names)} names for {len(deformations)} blendshapes")
    blendshapes = [Blendshape(str(n), d) for n, d in zip(names, deformations)]
    logger.info("loaded %d blendshapes from %s", len(blendshapes), path)
    return blendshapes
