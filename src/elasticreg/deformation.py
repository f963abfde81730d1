"""
Elastic deformation solve
대응점 제약 + 법선 slack + 평활 연산자로 희소 시스템을 구성하고 풀이

    J = [ S ; lam * Jc ; k * Jn ],   H = J^T J

The correspondence right-hand side pulls interpolated mesh points toward
their targets, the normal right-hand side keeps each face normal near its
reference. Both are solved against one factorization of H.
"""

from dataclasses import dataclass
from typing import Optional
import logging

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import splu

from .affine_frames import AffineFrameBuilder, SmoothnessOperator
from .closest_point import closest_points_on_mesh
from .errors import FactorizationFailure
from .mesh_loader import MeshData

_LOGGER = logging.getLogger(__name__)

# SuperLU column ordering; kept symmetric by SymmetricMode so perm_r == perm_c
FILL_ORDERING = "COLAMD"


@dataclass
class DeformationSystem:
    """
    Attributes:
        jacobian: stacked J
        hessian: H = J^T J (CSC)
        rhs_correspondence: lam^2 * Jc^T * targets
        rhs_normals: k^2 * Jn^T * normals
        constraint: unscaled Jc
        slack: unscaled Jn
    """
    jacobian: sparse.csr_matrix
    hessian: sparse.csc_matrix
    rhs_correspondence: np.ndarray
    rhs_normals: np.ndarray
    constraint: sparse.csr_matrix
    slack: sparse.csr_matrix


@dataclass
class DeformResult:
    mesh: MeshData
    smoothness: SmoothnessOperator
    system: DeformationSystem
    coords: np.ndarray


def build_constraint_operator(
    mesh: MeshData,
    n_unknowns: int,
    *,
    indices: Optional[np.ndarray] = None,
    points: Optional[np.ndarray] = None,
    nn: int = 20,
    cores: int = 1,
) -> sparse.csr_matrix:
    """
    (k, n + m) correspondence operator Jc.

    Exactly one of `indices` (source vertex ids) or `points` (source positions)
    must be given. Points are projected onto `mesh` and their row carries the
    barycentric weights at the three vertices of the hit face; vertex ids give
    one-hot rows. Face-normal columns are always zero.
    """
    if (indices is None) == (points is None):
        raise ValueError("pass exactly one of indices or points")

    n = mesh.n_vertices
    if indices is not None:
        idx = np.asarray(indices, dtype=np.int64).reshape(-1)
        if idx.size and (int(idx.min()) < 0 or int(idx.max()) >= n):
            raise IndexError(f"correspondence vertex index out of range [0, {n - 1}]")
        rows = np.arange(idx.size, dtype=np.int64)
        return sparse.coo_matrix(
            (np.ones(idx.size), (rows, idx)),
            shape=(idx.size, n_unknowns),
        ).tocsr()

    pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    proj = closest_points_on_mesh(mesh, pts, nn=nn, cores=cores)
    verts = np.asarray(mesh.faces, dtype=np.int64)[proj.face_ids]
    rows = np.repeat(np.arange(pts.shape[0], dtype=np.int64), 3)
    return sparse.coo_matrix(
        (proj.barycentric.reshape(-1), (rows, verts.reshape(-1))),
        shape=(pts.shape[0], n_unknowns),
    ).tocsr()


def build_normal_slack(n_vertices: int, n_faces: int) -> sparse.csr_matrix:
    """(m, n + m) operator [0 | I_m] selecting the face-normal unknowns."""
    f = np.arange(n_faces, dtype=np.int64)
    return sparse.coo_matrix(
        (np.ones(n_faces), (f, n_vertices + f)),
        shape=(n_faces, n_vertices + n_faces),
    ).tocsr()


def assemble_system(
    smoothness: sparse.spmatrix,
    constraint: sparse.spmatrix,
    slack: sparse.spmatrix,
    targets: np.ndarray,
    normals: np.ndarray,
    lam: float,
    k: float,
) -> DeformationSystem:
    """Stack [S; lam*Jc; k*Jn] and form the normal equations."""
    lam = float(lam)
    k = float(k)
    targets = np.asarray(targets, dtype=np.float64).reshape(-1, 3)
    if targets.shape[0] != constraint.shape[0]:
        raise ValueError(
            f"{constraint.shape[0]} constraint rows but {targets.shape[0]} target points"
        )

    jacobian = sparse.vstack([smoothness, lam * constraint, k * slack], format="csr")
    hessian = (jacobian.T @ jacobian).tocsc()

    rhs_c = lam * lam * np.asarray(constraint.T @ targets)
    rhs_n = k * k * np.asarray(slack.T @ np.asarray(normals, dtype=np.float64))

    return DeformationSystem(
        jacobian=jacobian,
        hessian=hessian,
        rhs_correspondence=rhs_c,
        rhs_normals=rhs_n,
        constraint=sparse.csr_matrix(constraint),
        slack=sparse.csr_matrix(slack),
    )


class CholeskyFactor:
    """
    Symmetric positive definite factorization of H.

    SuperLU runs in symmetric mode (symmetric ordering, diagonal pivots
    only). Under that ordering the pivots are the D of an LDL^T
    factorization, so H is positive definite exactly when every pivot is
    positive.
    """

    def __init__(self, hessian: sparse.spmatrix, *, pivot_tolerance: float = 1e-12):
        H = sparse.csc_matrix(hessian)
        if H.shape[0] != H.shape[1] or H.shape[0] == 0:
            raise FactorizationFailure(f"Hessian must be square and non-empty, got {H.shape}")

        try:
            self._lu = splu(
                H,
                permc_spec=FILL_ORDERING,
                diag_pivot_thresh=0.0,
                options={"SymmetricMode": True},
            )
        except RuntimeError as exc:
            raise FactorizationFailure(f"Hessian factorization failed: {exc}") from exc

        if not np.array_equal(self._lu.perm_r, self._lu.perm_c):
            raise FactorizationFailure("Hessian is not positive definite (off-diagonal pivoting required)")

        pivots = np.asarray(self._lu.U.diagonal(), dtype=np.float64)
        if pivots.size == 0 or not np.all(np.isfinite(pivots)):
            raise FactorizationFailure("Hessian factorization produced non-finite pivots")
        top = float(np.max(np.abs(pivots)))
        low = float(np.min(pivots))
        if low <= float(pivot_tolerance) * top:
            raise FactorizationFailure(
                f"Hessian is not positive definite (min pivot {low:.3e}, max pivot {top:.3e})"
            )
        self.shape = H.shape
        self.ordering = FILL_ORDERING

    def solve(self, rhs: np.ndarray) -> np.ndarray:
        out = np.asarray(self._lu.solve(np.asarray(rhs, dtype=np.float64)))
        if not np.all(np.isfinite(out)):
            raise FactorizationFailure("triangular solve produced non-finite values")
        return out


def solve_positions(
    factor: CholeskyFactor,
    system: DeformationSystem,
    coords: np.ndarray,
    n_vertices: int,
) -> np.ndarray:
    """
    Solve both right-hand sides with one factor and combine them.

    The baseline is the reference coordinates with vertex rows zeroed; the
    correspondence solve is taken relative to it and the normal solve is
    added on top. Returns the full (n + m, 3) coordinate matrix.
    """
    baseline = np.asarray(coords, dtype=np.float64).copy()
    baseline[:n_vertices] = 0.0

    k_sol = factor.solve(system.rhs_correspondence)
    delta = factor.solve(system.rhs_normals) + (k_sol - baseline)
    return baseline + delta


def elastic_deform(
    mesh: MeshData,
    targets: np.ndarray,
    *,
    indices: Optional[np.ndarray] = None,
    points: Optional[np.ndarray] = None,
    k: float = 1.0,
    lam: float = 1.0,
    smoothness: Optional[SmoothnessOperator] = None,
    nn: int = 20,
    cores: int = 1,
) -> DeformResult:
    """
    Deform `mesh` so the given source correspondences move toward `targets`.

    Args:
        mesh: reference mesh the operators are built on
        targets: (k, 3) target positions
        indices / points: source side of the correspondences (exactly one)
        k: normal slack weight
        lam: correspondence weight
        smoothness: cached S for `mesh`; built when None

    Raises:
        DegenerateGeometry: singular face frame while building S
        FactorizationFailure: H is not positive definite
    """
    if smoothness is None:
        smoothness = AffineFrameBuilder().build(mesh)
    elif smoothness.n_vertices != mesh.n_vertices or smoothness.n_faces != mesh.n_faces:
        raise ValueError("cached smoothness operator does not match the reference mesh")

    n = smoothness.n_vertices
    constraint = build_constraint_operator(
        mesh,
        smoothness.n_unknowns,
        indices=indices,
        points=points,
        nn=nn,
        cores=cores,
    )
    slack = build_normal_slack(n, smoothness.n_faces)
    system = assemble_system(
        smoothness.process,
        constraint,
        slack,
        targets,
        smoothness.normals,
        lam=lam,
        k=k,
    )
    factor = CholeskyFactor(system.hessian)
    coords = solve_positions(factor, system, smoothness.coords, n)

    _LOGGER.debug(
        "Elastic solve: %d unknowns, %d correspondences, lambda=%g, k=%g",
        smoothness.n_unknowns,
        constraint.shape[0],
        lam,
        k,
    )
    return DeformResult(
        mesh=mesh.with_vertices(coords[:n]),
        smoothness=smoothness,
        system=system,
        coords=coords,
    )
