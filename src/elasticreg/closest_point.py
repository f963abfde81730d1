"""
Closest point on a triangle surface.

For every query point the `nn` faces with the nearest barycenters are probed
and the exact point-triangle projection is taken from the best candidate.
Larger `nn` is more accurate and more expensive. Queries are independent, so
large batches are split across a thread pool and merged back by query index.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import logging

import numpy as np
from scipy.spatial import cKDTree
import trimesh

from .mesh_loader import MeshData

_LOGGER = logging.getLogger(__name__)

_MIN_CHUNK = 2048


@dataclass
class ClosestPointResult:
    """
    Attributes:
        points: (k, 3) closest points on the surface
        face_ids: (k,) owning face of each closest point
        distances: (k,) signed distance, positive on the face-normal side
        barycentric: (k, 3) weights of the closest point in its face
        normals: (k, 3) unit normal of the owning face
    """
    points: np.ndarray
    face_ids: np.ndarray
    distances: np.ndarray
    barycentric: np.ndarray
    normals: np.ndarray

    def __len__(self) -> int:
        return int(self.face_ids.shape[0])


class SurfaceQuery:
    """Reusable closest-point index over an immutable mesh."""

    def __init__(self, mesh: MeshData):
        if mesh.n_faces == 0:
            raise ValueError("cannot query a mesh without faces")
        self.mesh = mesh
        mesh.compute_normals(compute_vertex_normals=False)
        self._triangles = mesh.triangles
        self._face_normals = np.asarray(mesh.face_normals, dtype=np.float64)
        self._tree = cKDTree(mesh.face_barycenters)

    def query(self, points: np.ndarray, *, nn: int = 20, cores: int = 1) -> ClosestPointResult:
        """
        Closest surface point for every row of `points`.

        Args:
            points: (k, 3) query points
            nn: number of candidate faces probed per point
            cores: worker threads; results do not depend on this value
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        n = points.shape[0]
        nn = int(max(1, min(int(nn), self.mesh.n_faces)))
        cores = int(max(1, cores))

        closest = np.zeros((n, 3), dtype=np.float64)
        face_ids = np.zeros((n,), dtype=np.int64)
        if n == 0:
            return self._finish(points, closest, face_ids)

        if cores == 1 or n < 2 * _MIN_CHUNK:
            # n * nn candidate triangles per chunk
            for lo in range(0, n, _MIN_CHUNK):
                hi = min(lo + _MIN_CHUNK, n)
                closest[lo:hi], face_ids[lo:hi] = self._query_chunk(points[lo:hi], nn)
            return self._finish(points, closest, face_ids)

        bounds = np.linspace(0, n, num=min(cores * 4, max(2, n // _MIN_CHUNK)) + 1, dtype=np.int64)
        chunks = [(int(lo), int(hi)) for lo, hi in zip(bounds[:-1], bounds[1:]) if hi > lo]
        _LOGGER.debug("Closest point query: %d points in %d chunks on %d workers", n, len(chunks), cores)

        with ThreadPoolExecutor(max_workers=cores) as pool:
            futures = {
                pool.submit(self._query_chunk, points[lo:hi], nn): (lo, hi) for lo, hi in chunks
            }
            for future, (lo, hi) in futures.items():
                chunk_closest, chunk_faces = future.result()
                closest[lo:hi] = chunk_closest
                face_ids[lo:hi] = chunk_faces

        return self._finish(points, closest, face_ids)

    def _query_chunk(self, points: np.ndarray, nn: int) -> tuple[np.ndarray, np.ndarray]:
        _, cand = self._tree.query(points, k=nn)
        cand = np.asarray(cand, dtype=np.int64).reshape(points.shape[0], nn)

        tris = self._triangles[cand].reshape(-1, 3, 3)
        rep = np.repeat(points, nn, axis=0)
        proj = trimesh.triangles.closest_point(tris, rep).reshape(points.shape[0], nn, 3)

        d2 = np.sum((proj - points[:, None, :]) ** 2, axis=2)
        best = np.argmin(d2, axis=1)
        rows = np.arange(points.shape[0])
        return proj[rows, best], cand[rows, best]

    def _finish(self, points: np.ndarray, closest: np.ndarray, face_ids: np.ndarray) -> ClosestPointResult:
        normals = self._face_normals[face_ids] if face_ids.size else np.zeros((0, 3))
        if face_ids.size:
            bary = trimesh.triangles.points_to_barycentric(self._triangles[face_ids], closest)
        else:
            bary = np.zeros((0, 3), dtype=np.float64)

        offset = points - closest
        dist = np.linalg.norm(offset, axis=1)
        side = np.einsum("ij,ij->i", offset, normals) if face_ids.size else np.zeros((0,))
        signed = np.where(side < 0.0, -dist, dist)

        return ClosestPointResult(
            points=closest,
            face_ids=face_ids,
            distances=signed,
            barycentric=np.asarray(bary, dtype=np.float64),
            normals=np.asarray(normals, dtype=np.float64),
        )


def closest_points_on_mesh(
    mesh: MeshData,
    points: np.ndarray,
    *,
    nn: int = 20,
    cores: int = 1,
) -> ClosestPointResult:
    """One-shot closest point query (builds a throwaway SurfaceQuery)."""
    return SurfaceQuery(mesh).query(points, nn=nn, cores=cores)
