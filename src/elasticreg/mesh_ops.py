"""
Mesh cleanup, smoothing and rigid transform helpers.

These are the mesh-processing collaborators used around the elastic solver:
the source mesh is cleaned once before registration, and the deformed mesh
may be smoothed after each iteration.
"""

from __future__ import annotations

import logging

import numpy as np
import trimesh

from .errors import InvalidMeshTopology
from .mesh_loader import MeshData

_LOGGER = logging.getLogger(__name__)

SMOOTHING_METHODS = {
    "taubin": "taubin",
    "t": "taubin",
    "laplace": "laplace",
    "l": "laplace",
    "hclaplace": "hclaplace",
    "h": "hclaplace",
    "humphrey": "hclaplace",
}


def validate_mesh_arrays(mesh: MeshData, *, name: str = "mesh") -> None:
    """Raise InvalidMeshTopology unless vertices/faces are (n,3)/(m,3) with valid indices."""
    if mesh is None:
        raise InvalidMeshTopology(f"{name} is None")

    vertices = np.asarray(mesh.vertices)
    faces = np.asarray(mesh.faces)
    if vertices.ndim != 2 or vertices.shape[1] != 3 or vertices.shape[0] == 0:
        raise InvalidMeshTopology(f"{name}: vertices must be a non-empty (n, 3) array, got {vertices.shape}")
    if faces.ndim != 2 or faces.shape[1] != 3 or faces.shape[0] == 0:
        raise InvalidMeshTopology(f"{name}: faces must be a non-empty (m, 3) array, got {faces.shape}")
    if int(faces.min()) < 0 or int(faces.max()) >= vertices.shape[0]:
        raise InvalidMeshTopology(
            f"{name}: face indices must lie in [0, {vertices.shape[0] - 1}]"
        )


def clean_mesh(mesh: MeshData, *, area_eps: float = 1e-12) -> MeshData:
    """
    Drop degenerate faces and unreferenced vertices.

    - faces with repeated vertex indices
    - faces touching non-finite vertices
    - faces whose doubled area is below `area_eps` (relative to the bbox diagonal)
    - vertices no remaining face references (faces are reindexed)
    """
    validate_mesh_arrays(mesh, name="source mesh")

    vertices = np.asarray(mesh.vertices, dtype=np.float64)
    faces = np.asarray(mesh.faces, dtype=np.int64)
    a, b, c = faces[:, 0], faces[:, 1], faces[:, 2]

    keep = (a != b) & (b != c) & (a != c)
    finite_v = np.all(np.isfinite(vertices), axis=1)
    keep &= finite_v[a] & finite_v[b] & finite_v[c]

    tri = vertices[faces]
    area2 = np.linalg.norm(np.cross(tri[:, 1] - tri[:, 0], tri[:, 2] - tri[:, 0]), axis=1)
    finite_pts = vertices[finite_v]
    diag = float(np.linalg.norm(np.ptp(finite_pts, axis=0))) if finite_pts.size else 0.0
    keep &= np.nan_to_num(area2) > float(area_eps) * max(1.0, diag * diag)

    faces = faces[keep]
    if faces.shape[0] == 0:
        raise InvalidMeshTopology("source mesh: no non-degenerate faces left after cleanup")

    used = np.unique(faces.reshape(-1))
    new_faces = np.searchsorted(used, faces).astype(np.int32, copy=False)

    n_drop_faces = int(np.count_nonzero(~keep))
    n_drop_verts = int(vertices.shape[0] - used.size)
    if n_drop_faces or n_drop_verts:
        _LOGGER.info(
            "Mesh cleanup removed %d degenerate faces and %d unreferenced vertices",
            n_drop_faces,
            n_drop_verts,
        )

    out = MeshData(
        vertices=vertices[used],
        faces=new_faces,
        unit=mesh.unit,
        filepath=mesh.filepath,
    )
    out.compute_normals()
    return out


def smooth_mesh(mesh: MeshData, iterations: int = 1, method: str = "taubin") -> MeshData:
    """
    Smooth vertex positions with one of trimesh's Laplacian filters.

    Args:
        iterations: number of filter passes (0 returns the mesh unchanged)
        method: 'taubin' ('t'), 'laplace' ('l') or 'hclaplace' ('h')
    """
    key = SMOOTHING_METHODS.get(str(method or "").strip().lower())
    if key is None:
        raise ValueError(
            f"Unsupported smoothing method: {method!r} "
            f"(expected one of {sorted(set(SMOOTHING_METHODS.values()))})"
        )
    iterations = int(iterations)
    if iterations <= 0:
        return mesh

    tm = trimesh.Trimesh(vertices=mesh.vertices.copy(), faces=mesh.faces.copy(), process=False)
    if key == "taubin":
        trimesh.smoothing.filter_taubin(tm, iterations=iterations)
    elif key == "laplace":
        # open surfaces have no meaningful enclosed volume to preserve
        trimesh.smoothing.filter_laplacian(tm, iterations=iterations, volume_constraint=False)
    else:
        trimesh.smoothing.filter_humphrey(tm, iterations=iterations)

    return mesh.with_vertices(np.asarray(tm.vertices, dtype=np.float64))


def transform_points(points: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Apply a (4, 4) homogeneous transform to (n, 3) points."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    return trimesh.transformations.transform_points(pts, np.asarray(matrix, dtype=np.float64))


def transform_mesh(mesh: MeshData, matrix: np.ndarray) -> MeshData:
    """
    Return a copy of `mesh` with a (4, 4) homogeneous transform applied.

    A reflecting transform also flips the face winding so normals keep
    pointing outward.
    """
    matrix = np.asarray(matrix, dtype=np.float64)
    out = mesh.with_vertices(transform_points(mesh.vertices, matrix))
    if float(np.linalg.det(matrix[:3, :3])) < 0.0:
        out = MeshData(
            vertices=out.vertices,
            faces=out.faces[:, ::-1].copy(),
            unit=out.unit,
            filepath=out.filepath,
        )
        out.compute_normals()
    return out
