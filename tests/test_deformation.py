import unittest

import numpy as np
from scipy import sparse

from src.elasticreg.affine_frames import create_smoothness_operator
from src.elasticreg.deformation import (
    CholeskyFactor,
    build_constraint_operator,
    build_normal_slack,
    elastic_deform,
)
from src.elasticreg.errors import FactorizationFailure
from src.elasticreg.mesh_loader import MeshData


def _grid(n: int = 2, size: float = 1.0) -> MeshData:
    xs = np.linspace(0.0, size, n + 1)
    vertices = np.array([[x, y, 0.0] for y in xs for x in xs], dtype=np.float64)
    faces = []
    for j in range(n):
        for i in range(n):
            a = j * (n + 1) + i
            faces.append([a, a + 1, a + n + 2])
            faces.append([a, a + n + 2, a + n + 1])
    return MeshData(vertices=vertices, faces=np.asarray(faces, dtype=np.int32))


class TestConstraintOperators(unittest.TestCase):
    def test_index_rows_are_one_hot(self):
        mesh = _grid(2)
        Jc = build_constraint_operator(mesh, 17, indices=np.array([0, 4, 8]))

        self.assertEqual(Jc.shape, (3, 17))
        dense = Jc.toarray()
        np.testing.assert_allclose(dense.sum(axis=1), 1.0)
        self.assertEqual(dense[1, 4], 1.0)
        # face-normal columns stay empty
        np.testing.assert_allclose(dense[:, 9:], 0.0)

    def test_point_rows_are_barycentric(self):
        mesh = _grid(2)
        mesh.compute_normals()
        pts = np.array([[0.2, 0.1, 0.0], [0.75, 0.6, 0.0], [1.0, 1.0, 0.0]])
        Jc = build_constraint_operator(mesh, 17, points=pts)

        dense = Jc.toarray()
        np.testing.assert_allclose(dense.sum(axis=1), 1.0, atol=1e-12)
        coords = np.vstack([mesh.vertices, mesh.face_normals])
        np.testing.assert_allclose(Jc @ coords, pts, atol=1e-12)

    def test_exactly_one_source_required(self):
        mesh = _grid(1)
        with self.assertRaises(ValueError):
            build_constraint_operator(mesh, 6)
        with self.assertRaises(ValueError):
            build_constraint_operator(mesh, 6, indices=[0], points=[[0.0, 0.0, 0.0]])

    def test_index_out_of_range(self):
        mesh = _grid(1)
        with self.assertRaises(IndexError):
            build_constraint_operator(mesh, 6, indices=[0, 4])

    def test_normal_slack_selects_normals(self):
        mesh = _grid(1)
        mesh.compute_normals()
        Jn = build_normal_slack(mesh.n_vertices, mesh.n_faces)
        coords = np.vstack([mesh.vertices, mesh.face_normals])

        self.assertEqual(Jn.shape, (2, 6))
        np.testing.assert_allclose(Jn @ coords, mesh.face_normals)


class TestCholeskyFactor(unittest.TestCase):
    def test_solves_spd_system(self):
        A = sparse.csc_matrix(np.array([[4.0, 1.0, 0.0], [1.0, 3.0, 0.5], [0.0, 0.5, 2.0]]))
        b = np.array([[1.0, 0.0], [2.0, 1.0], [3.0, -1.0]])
        x = CholeskyFactor(A).solve(b)
        np.testing.assert_allclose(A @ x, b, atol=1e-12)

    def test_indefinite_matrix_fails(self):
        with self.assertRaises(FactorizationFailure):
            CholeskyFactor(sparse.diags([1.0, -1.0, 2.0]).tocsc())

    def test_singular_matrix_fails(self):
        with self.assertRaises(FactorizationFailure):
            CholeskyFactor(sparse.diags([1.0, 0.0, 2.0]).tocsc())

    def test_empty_matrix_fails(self):
        with self.assertRaises(FactorizationFailure):
            CholeskyFactor(sparse.csc_matrix((0, 0)))

    def test_mesh_hessian_uses_column_ordering(self):
        mesh = _grid(20, size=20.0)
        idx = np.arange(0, mesh.n_vertices, 3)
        out = elastic_deform(mesh, mesh.vertices[idx], indices=idx, k=1, lam=1.0)
        H = out.system.hessian

        factor = CholeskyFactor(H)
        self.assertEqual(factor.ordering, "COLAMD")
        self.assertEqual(factor.shape, H.shape)
        x = factor.solve(out.system.rhs_correspondence)
        np.testing.assert_allclose(H @ x, out.system.rhs_correspondence, atol=1e-8)


class TestElasticDeform(unittest.TestCase):
    def test_identity_correspondences_leave_mesh_unchanged(self):
        mesh = _grid(2)
        idx = np.arange(mesh.n_vertices)
        out = elastic_deform(mesh, mesh.vertices.copy(), indices=idx, k=1, lam=1.0)

        np.testing.assert_allclose(out.mesh.vertices, mesh.vertices, atol=1e-10)
        np.testing.assert_allclose(out.coords[mesh.n_vertices:], out.smoothness.normals, atol=1e-10)

    def test_translation_is_reproduced_exactly(self):
        mesh = _grid(3)
        shift = np.array([0.3, -0.2, 0.5])
        idx = np.arange(mesh.n_vertices)
        out = elastic_deform(mesh, mesh.vertices + shift, indices=idx, k=1, lam=1.0)

        np.testing.assert_allclose(out.mesh.vertices, mesh.vertices + shift, atol=1e-9)

    def test_larger_lambda_fits_targets_closer(self):
        mesh = _grid(4, size=4.0)
        idx = np.arange(mesh.n_vertices)
        targets = mesh.vertices.copy()
        targets[12, 2] += 1.0  # center vertex

        residuals = []
        for lam in (0.1, 1.0, 10.0):
            out = elastic_deform(mesh, targets, indices=idx, k=1, lam=lam)
            residuals.append(float(np.linalg.norm(out.mesh.vertices - targets)))

        self.assertGreater(residuals[0], residuals[1])
        self.assertGreater(residuals[1], residuals[2])

    def test_cached_operator_is_reused(self):
        mesh = _grid(2)
        op = create_smoothness_operator(mesh)
        out = elastic_deform(mesh, mesh.vertices[[0, 2, 6, 8]], indices=[0, 2, 6, 8], smoothness=op)
        self.assertIs(out.smoothness, op)

    def test_cached_operator_must_match_mesh(self):
        op = create_smoothness_operator(_grid(1))
        mesh = _grid(2)
        with self.assertRaises(ValueError):
            elastic_deform(mesh, mesh.vertices, indices=np.arange(9), smoothness=op)


if __name__ == '__main__':
    unittest.main()
