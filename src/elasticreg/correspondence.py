"""
Closest-point correspondences with adaptive rejection
대상 표면 위 최근접점 대응과 법선/거리/경계 기준 필터링

A match between a working-mesh vertex and its closest target point is
accepted when the normal deviation is below `rho`, the absolute distance is
within the current tolerance and, unless border hits are allowed, the hit
face is not a target border face. If fewer than `minclost` matches survive,
the distance tolerance grows by `distinc` until enough are found. The growth
is bounded and ends in CorrespondenceStarvation.
"""

from dataclasses import dataclass
import logging

import numpy as np

from .alignment_utils import angle_between
from .closest_point import SurfaceQuery
from .errors import CorrespondenceStarvation
from .mesh_loader import MeshData

_LOGGER = logging.getLogger(__name__)


@dataclass
class CorrespondenceSet:
    """
    Accepted correspondences of one iteration.

    Attributes:
        indices: (k,) accepted source vertex ids
        source_points: (k, 3) reference-mesh vertices at `indices`
        target_points: (k, 3) matched target surface points
        target_faces: (k,) owning target faces
        distances: (k,) signed distances
        angles: (k,) normal deviation in radians
        border: (k,) True where the hit face is a target border face
        used_distance: distance tolerance that produced this set
        relaxations: number of tolerance increments applied
    """
    indices: np.ndarray
    source_points: np.ndarray
    target_points: np.ndarray
    target_faces: np.ndarray
    distances: np.ndarray
    angles: np.ndarray
    border: np.ndarray
    used_distance: float
    relaxations: int

    def __len__(self) -> int:
        return int(self.indices.shape[0])


class CorrespondenceFinder:
    """
    Match working-mesh vertices to the (immutable) target surface.
    """

    def __init__(
        self,
        target: MeshData,
        *,
        rho: float = np.pi / 2,
        dist: float = 2.0,
        border: bool = False,
        minclost: int = 50,
        distinc: float = 1.0,
        nn: int = 20,
        cores: int = 1,
        max_relaxations: int = 1000,
    ):
        self.target = target
        self.rho = float(rho)
        self.dist = float(dist)
        self.border = bool(border)
        self.minclost = int(minclost)
        self.distinc = float(distinc)
        self.nn = int(nn)
        self.cores = int(cores)
        self.max_relaxations = int(max(0, max_relaxations))

        self._query = SurfaceQuery(target)
        self._border_faces = target.get_border_faces()

    def find(self, mesh: MeshData, reference_vertices: np.ndarray) -> CorrespondenceSet:
        """
        Args:
            mesh: current working mesh, queried against the target
            reference_vertices: (n, 3) vertices of the mesh the next solve is built on

        Raises:
            CorrespondenceStarvation: `minclost` matches cannot be reached
        """
        mesh.compute_normals()
        reference_vertices = np.asarray(reference_vertices, dtype=np.float64)
        if reference_vertices.shape != mesh.vertices.shape:
            raise ValueError("reference vertices must match the working mesh vertex array")

        hits = self._query.query(mesh.vertices, nn=self.nn, cores=self.cores)
        angles = angle_between(mesh.normals, hits.normals)
        on_border = self._border_faces[hits.face_ids]
        abs_dist = np.abs(hits.distances)

        candidate = angles < self.rho
        if not self.border:
            candidate &= ~on_border

        n_candidates = int(np.count_nonzero(candidate))
        current = self.dist
        good = candidate & (abs_dist <= current)
        relaxations = 0

        if int(np.count_nonzero(good)) < self.minclost:
            if n_candidates < self.minclost or self.distinc <= 0.0:
                raise CorrespondenceStarvation(
                    f"only {n_candidates} matches pass the normal/border tests at any distance, "
                    f"{self.minclost} required",
                    required=self.minclost,
                    found=int(np.count_nonzero(good)),
                    distance=current,
                )

            while int(np.count_nonzero(good)) < self.minclost:
                if relaxations >= self.max_relaxations:
                    raise CorrespondenceStarvation(
                        f"{int(np.count_nonzero(good))} of {self.minclost} required matches "
                        f"after {relaxations} distance increments (distance {current:g})",
                        required=self.minclost,
                        found=int(np.count_nonzero(good)),
                        distance=current,
                    )
                relaxations += 1
                current = self.dist + relaxations * self.distinc
                good = candidate & (abs_dist <= current)

            _LOGGER.info("Distance tolerance increased to %g (%d increments)", current, relaxations)

        idx = np.flatnonzero(good)
        return CorrespondenceSet(
            indices=idx,
            source_points=reference_vertices[idx].copy(),
            target_points=hits.points[idx].copy(),
            target_faces=hits.face_ids[idx].copy(),
            distances=hits.distances[idx].copy(),
            angles=angles[idx].copy(),
            border=on_border[idx].copy(),
            used_distance=float(current),
            relaxations=relaxations,
        )
