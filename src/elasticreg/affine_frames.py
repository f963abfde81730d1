"""
Per-face affine frames and the smoothness operator
면별 아핀 좌표계와 인접 면 간 변형 차이를 벌점화하는 평활 연산자

Based on: B. Amberg, "Editing faces in videos", University of Basel, 2011.

Unknowns are the stacked coordinates X = [V; N] ((n + m) x 3): mesh vertices
followed by one normal per face. Every spatial dimension is one column of X,
so all operators here act on rows and are shared by the x, y and z solves.
"""

from dataclasses import dataclass
import logging

import numpy as np
from scipy import sparse

from .errors import DegenerateGeometry
from .mesh_loader import InteriorEdges, MeshData

_LOGGER = logging.getLogger(__name__)


@dataclass
class SmoothnessOperator:
    """
    평활 연산자 S와 그 구성 요소

    Attributes:
        process: (3E, n + m) S = W * arcnode * A * sel
        sel: (3m, n + m) 면별 [e1; e2; normal] 선택 연산자
        coords: (n + m, 3) 기준 좌표 [V; N]
        normals: (m, 3) 기준 면 법선
        weights: (E,) 내부 엣지 가중치
        n_vertices, n_faces, n_edges: 차원 정보
    """
    process: sparse.csr_matrix
    sel: sparse.csr_matrix
    coords: np.ndarray
    normals: np.ndarray
    weights: np.ndarray
    n_vertices: int
    n_faces: int
    n_edges: int

    @property
    def n_unknowns(self) -> int:
        return self.n_vertices + self.n_faces

    def hessian(self) -> sparse.csr_matrix:
        """Smoothness contribution S^T S to the normal equations."""
        return (self.process.T @ self.process).tocsr()


class AffineFrameBuilder:
    """
    면별 아핀 좌표계(두 엣지 + 법선)로부터 평활 연산자 S를 구성합니다.

    인접한 두 면의 아핀 변환 차이를 엣지 가중치로 스케일해 벌점화하며,
    경계 엣지(한쪽 면만 있는 엣지)는 그래프에서 제외됩니다.
    """

    def __init__(self, det_tolerance: float = 1e-12):
        """
        Args:
            det_tolerance: |det(frame)| / (|e1| |e2|) 가 이 값 이하이면 퇴화로 판정
        """
        self.det_tolerance = float(det_tolerance)

    def build(self, mesh: MeshData) -> SmoothnessOperator:
        """
        Args:
            mesh: 기준 메쉬 (면 법선이 없으면 계산)

        Returns:
            SmoothnessOperator

        Raises:
            DegenerateGeometry: 특이(singular) 면 좌표계 또는 무게중심이 겹치는 인접 면
        """
        mesh.compute_normals(compute_vertex_normals=False)
        n = mesh.n_vertices
        m = mesh.n_faces
        normals = np.asarray(mesh.face_normals, dtype=np.float64)
        coords = np.vstack([np.asarray(mesh.vertices, dtype=np.float64), normals])

        sel = self.selection_operator(mesh.faces, n)
        frames = np.asarray(sel @ coords).reshape(m, 3, 3)
        inv_frames = self.inverse_frames(frames)

        edges = mesh.get_interior_edges()
        weights = self.edge_weights(mesh, edges)
        arc = self.weighted_arc_node(edges, weights, m)
        block = self.block_diagonal(inv_frames)

        process = (arc @ block @ sel).tocsr()
        _LOGGER.debug(
            "Smoothness operator: %d faces, %d interior edges, %d non-zeros",
            m,
            len(edges),
            process.nnz,
        )
        return SmoothnessOperator(
            process=process,
            sel=sel,
            coords=coords,
            normals=normals,
            weights=weights,
            n_vertices=n,
            n_faces=m,
            n_edges=len(edges),
        )

    def selection_operator(self, faces: np.ndarray, n_vertices: int) -> sparse.csr_matrix:
        """
        (3m, n + m) 선택 연산자

        face f = (a, b, c) 에 대해
            row 3f     = v_b - v_a
            row 3f + 1 = v_c - v_a
            row 3f + 2 = normal_f
        """
        faces = np.asarray(faces, dtype=np.int64)
        m = faces.shape[0]
        f = np.arange(m, dtype=np.int64)
        a, b, c = faces[:, 0], faces[:, 1], faces[:, 2]

        rows = np.concatenate([3 * f, 3 * f, 3 * f + 1, 3 * f + 1, 3 * f + 2])
        cols = np.concatenate([a, b, a, c, n_vertices + f])
        vals = np.concatenate([-np.ones(m), np.ones(m), -np.ones(m), np.ones(m), np.ones(m)])

        return sparse.coo_matrix(
            (vals, (rows, cols)),
            shape=(3 * m, n_vertices + m),
        ).tocsr()

    def inverse_frames(self, frames: np.ndarray) -> np.ndarray:
        """
        (m, 3, 3) 행 단위 좌표계 [e1; e2; n] 의 역행렬

        Raises:
            DegenerateGeometry: 엣지가 (수치적으로) 평행하거나 길이가 0인 면
        """
        frames = np.asarray(frames, dtype=np.float64)
        det = np.linalg.det(frames)
        scale = np.linalg.norm(frames[:, 0], axis=1) * np.linalg.norm(frames[:, 1], axis=1)
        bad = ~np.isfinite(det) | (np.abs(det) <= self.det_tolerance * scale) | (scale <= 0.0)
        if np.any(bad):
            face_ids = np.flatnonzero(bad)
            raise DegenerateGeometry(
                f"{face_ids.size} face frame(s) are singular (first: {face_ids[:5].tolist()})",
                face_ids=face_ids,
            )
        return np.linalg.inv(frames)

    def block_diagonal(self, blocks: np.ndarray) -> sparse.csr_matrix:
        """(m, 3, 3) 블록으로 (3m, 3m) 블록 대각 행렬 구성"""
        m = blocks.shape[0]
        base = 3 * np.arange(m, dtype=np.int64)
        ii, jj = np.meshgrid(np.arange(3), np.arange(3), indexing="ij")
        rows = (base[:, None, None] + ii[None]).reshape(-1)
        cols = (base[:, None, None] + jj[None]).reshape(-1)
        return sparse.coo_matrix(
            (blocks.reshape(-1), (rows, cols)),
            shape=(3 * m, 3 * m),
        ).tocsr()

    def edge_weights(self, mesh: MeshData, edges: InteriorEdges) -> np.ndarray:
        """
        내부 엣지 가중치: sqrt(엣지와 양쪽 무게중심이 이루는 면적) / 무게중심 간 거리

        Raises:
            DegenerateGeometry: 인접 면의 무게중심이 일치하는 경우
        """
        if len(edges) == 0:
            return np.zeros((0,), dtype=np.float64)

        verts = np.asarray(mesh.vertices, dtype=np.float64)
        bary = mesh.face_barycenters
        v1 = verts[edges.vert1]
        v2 = verts[edges.vert2]
        b1 = bary[edges.face1]
        b2 = bary[edges.face2]

        e = v2 - v1
        area = 0.5 * (
            np.linalg.norm(np.cross(e, b1 - v1), axis=1)
            + np.linalg.norm(np.cross(e, b2 - v1), axis=1)
        )
        dist = np.linalg.norm(b1 - b2, axis=1)

        bad = ~(dist > 0.0)
        if np.any(bad):
            face_ids = np.unique(np.concatenate([edges.face1[bad], edges.face2[bad]]))
            raise DegenerateGeometry(
                f"{int(np.count_nonzero(bad))} interior edge(s) join faces with coincident barycenters",
                face_ids=face_ids,
            )
        return np.sqrt(area) / dist

    def weighted_arc_node(self, edges: InteriorEdges, weights: np.ndarray, n_faces: int) -> sparse.csr_matrix:
        """
        (3E, 3m) 가중 arc-node 행렬 (W * kron(arcnode, I3))

        edge e 의 행은 face1 에 -w_e, face2 에 +w_e (공간 차원별로 복제)
        """
        n_edges = len(edges)
        d = np.arange(3, dtype=np.int64)
        e = np.arange(n_edges, dtype=np.int64)
        rows = (3 * e[:, None] + d[None]).reshape(-1)
        w = np.repeat(np.asarray(weights, dtype=np.float64), 3)

        cols1 = (3 * edges.face1[:, None] + d[None]).reshape(-1)
        cols2 = (3 * edges.face2[:, None] + d[None]).reshape(-1)

        return sparse.coo_matrix(
            (np.concatenate([-w, w]), (np.concatenate([rows, rows]), np.concatenate([cols1, cols2]))),
            shape=(3 * n_edges, 3 * n_faces),
        ).tocsr()


def create_smoothness_operator(mesh: MeshData) -> SmoothnessOperator:
    """Build S for `mesh` with the default frame tolerance."""
    return AffineFrameBuilder().build(mesh)
