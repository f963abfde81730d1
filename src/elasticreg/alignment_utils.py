"""
Rigid alignment helpers: landmark Procrustes and rigid ICP refinement.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Sequence

import numpy as np
import trimesh

from .closest_point import SurfaceQuery
from .mesh_loader import MeshData
from .mesh_ops import transform_mesh

_LOGGER = logging.getLogger(__name__)


def _as_points(value: np.ndarray, name: str) -> np.ndarray:
    arr = np.asarray(value, dtype=np.float64)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError(f"{name} must be an (n, 3) array, got shape {arr.shape}")
    return arr


def angle_between(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """
    Row-wise angle (radians) between two (n, 3) vector arrays.

    Rows where either vector has zero length get pi, so any tolerance below
    pi rejects them.
    """
    a = np.asarray(a, dtype=np.float64).reshape(-1, 3)
    b = np.asarray(b, dtype=np.float64).reshape(-1, 3)
    na = np.linalg.norm(a, axis=1)
    nb = np.linalg.norm(b, axis=1)
    denom = na * nb
    valid = denom > 0.0

    cos = np.full(a.shape[0], -1.0, dtype=np.float64)
    cos[valid] = np.einsum("ij,ij->i", a[valid], b[valid]) / denom[valid]
    return np.arccos(np.clip(cos, -1.0, 1.0))


def rigid_landmark_alignment(
    moving: np.ndarray,
    fixed: np.ndarray,
    *,
    scale: bool = True,
    reflection: bool = False,
) -> np.ndarray:
    """
    (4, 4) transform sending `moving` landmarks onto `fixed` (least squares).

    Args:
        scale: allow uniform scaling
        reflection: allow improper rotations
    """
    a = _as_points(moving, "moving landmarks")
    b = _as_points(fixed, "fixed landmarks")
    if a.shape[0] != b.shape[0]:
        raise ValueError(
            f"landmark sets differ in size: {a.shape[0]} vs {b.shape[0]}"
        )
    if a.shape[0] < 3:
        raise ValueError("at least 3 landmarks are required for rigid alignment")

    matrix = trimesh.registration.procrustes(
        a,
        b,
        reflection=bool(reflection),
        translation=True,
        scale=bool(scale),
        return_cost=False,
    )
    return np.asarray(matrix, dtype=np.float64)


@dataclass(frozen=True)
class RigidICPSpec:
    """
    Rigid ICP refinement settings.

    Attributes:
        iterations: number of ICP iterations
        rhotol: maximum normal deviation (radians) of a used match
        uprange: fraction of the closest matches used per iteration (0, 1]
        scale: allow uniform scaling
    """
    iterations: int = 3
    rhotol: float = np.pi / 2
    uprange: float = 0.6
    scale: bool = True

    def __post_init__(self):
        if int(self.iterations) < 0:
            raise ValueError("ICP iterations must be >= 0")
        if not (0.0 < float(self.uprange) <= 1.0):
            raise ValueError("ICP uprange must lie in (0, 1]")

    @classmethod
    def from_sequence(cls, values: Sequence[float]) -> 'RigidICPSpec':
        """Build from the compact (iterations, rhotol, uprange, scale) form."""
        vals = list(values)
        if len(vals) != 4:
            raise ValueError("ICP settings need exactly 4 values: iterations, rhotol, uprange, scale")
        return cls(
            iterations=int(vals[0]),
            rhotol=float(vals[1]),
            uprange=float(vals[2]),
            scale=bool(vals[3]),
        )


def rigid_icp(
    mesh: MeshData,
    target: MeshData,
    spec: RigidICPSpec,
    *,
    lm1: np.ndarray | None = None,
    lm2: np.ndarray | None = None,
    reflection: bool = False,
    nn: int = 20,
    cores: int = 1,
    threshold: float = 1e-5,
) -> tuple[np.ndarray, float]:
    """
    Rigidly refine `mesh` onto `target`.

    Landmarks, when given, seed the refinement with a Procrustes fit. Each
    iteration fits the closest `uprange` share of matches whose normal
    deviation is below `rhotol`. Stops early when the cost improves by less
    than `threshold`.

    Returns:
        (matrix, cost): accumulated (4, 4) transform and last mean squared cost
    """
    total = np.eye(4, dtype=np.float64)
    if lm1 is not None and lm2 is not None:
        total = rigid_landmark_alignment(lm1, lm2, scale=spec.scale, reflection=reflection)

    query = SurfaceQuery(target)
    current = transform_mesh(mesh, total)
    old_cost = np.inf
    cost = np.inf

    for it in range(int(spec.iterations)):
        hits = query.query(current.vertices, nn=nn, cores=cores)
        angles = angle_between(current.normals, hits.normals)
        keep = angles < float(spec.rhotol)
        if np.count_nonzero(keep) >= 3:
            dist = np.abs(hits.distances)
            cutoff = float(np.quantile(dist[keep], float(spec.uprange)))
            keep &= dist <= cutoff

        if np.count_nonzero(keep) < 3:
            _LOGGER.warning("Rigid ICP stopped at iteration %d: fewer than 3 usable matches", it + 1)
            break

        matrix, _, cost = trimesh.registration.procrustes(
            current.vertices[keep],
            hits.points[keep],
            reflection=bool(reflection),
            translation=True,
            scale=bool(spec.scale),
            return_cost=True,
        )
        total = np.asarray(matrix, dtype=np.float64) @ total
        current = transform_mesh(current, matrix)
        _LOGGER.debug("Rigid ICP iteration %d: cost=%g, matches=%d", it + 1, cost, int(np.count_nonzero(keep)))

        if old_cost - cost < float(threshold):
            break
        old_cost = cost

    return total, float(cost)
