import tempfile
import unittest
from pathlib import Path

import numpy as np

from src.elasticreg.mesh_loader import MeshData, MeshLoader, MeshProcessor, load_landmarks


def _grid(n: int = 4) -> MeshData:
    xs = np.linspace(0.0, float(n), n + 1)
    vertices = np.array([[x, y, 0.1 * x] for y in xs for x in xs], dtype=np.float64)
    faces = []
    for j in range(n):
        for i in range(n):
            a = j * (n + 1) + i
            faces.append([a, a + 1, a + n + 2])
            faces.append([a, a + n + 2, a + n + 1])
    return MeshData(vertices=vertices, faces=np.asarray(faces, dtype=np.int32))


class TestMeshTopology(unittest.TestCase):
    def test_interior_and_boundary_edges(self):
        mesh = _grid(4)
        # 25 vertices, 32 faces -> 56 edges, 16 on the boundary
        self.assertEqual(len(mesh.get_boundary_edges()), 16)
        edges = mesh.get_interior_edges()
        self.assertEqual(len(edges), 40)

        for row, (v1, v2) in enumerate(zip(edges.vert1, edges.vert2)):
            for face in (edges.face1[row], edges.face2[row]):
                self.assertIn(v1, mesh.faces[face])
                self.assertIn(v2, mesh.faces[face])
        self.assertFalse(np.any(edges.face1 == edges.face2))

    def test_border_faces(self):
        small = _grid(2)
        self.assertEqual(int(small.get_border_faces().sum()), 6)

        big = _grid(4)
        border = big.get_border_faces()
        self.assertEqual(border.shape, (32,))
        # two corner triangles own two boundary edges each
        self.assertEqual(int(border.sum()), 14)

    def test_normals_are_unit_and_oriented(self):
        mesh = _grid(2)
        mesh.compute_normals()
        np.testing.assert_allclose(np.linalg.norm(mesh.face_normals, axis=1), 1.0)
        np.testing.assert_allclose(np.linalg.norm(mesh.normals, axis=1), 1.0)
        self.assertTrue((mesh.face_normals[:, 2] > 0).all())

    def test_with_vertices_checks_shape(self):
        mesh = _grid(2)
        moved = mesh.with_vertices(mesh.vertices + 1.0)
        np.testing.assert_allclose(moved.vertices, mesh.vertices + 1.0)
        self.assertIsNotNone(moved.face_normals)
        with self.assertRaises(ValueError):
            mesh.with_vertices(mesh.vertices[:3])

    def test_barycenters_and_area(self):
        vertices = np.array([[0.0, 0.0, 0.0], [3.0, 0.0, 0.0], [0.0, 3.0, 0.0]])
        mesh = MeshData(vertices=vertices, faces=np.array([[0, 1, 2]], dtype=np.int32))
        np.testing.assert_allclose(mesh.face_barycenters, [[1.0, 1.0, 0.0]])
        self.assertAlmostEqual(mesh.surface_area, 4.5)


class TestMeshIO(unittest.TestCase):
    def test_ply_round_trip_keeps_vertex_order(self):
        mesh = _grid(3)
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "grid.ply"
            MeshProcessor().save_mesh(mesh, path)
            loaded = MeshLoader().load(path)

        np.testing.assert_allclose(loaded.vertices, mesh.vertices)
        np.testing.assert_array_equal(loaded.faces, mesh.faces)
        self.assertIsNotNone(loaded.face_normals)

    def test_unsupported_format(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "grid.xyz"
            path.write_text("0 0 0\n", encoding="utf-8")
            with self.assertRaises(ValueError):
                MeshLoader().load(path)

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            MeshLoader().load("does-not-exist.ply")

    def test_load_landmarks(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "lm.txt"
            path.write_text("# nose tip\n1.0, 2.0, 3.0\n4 5 6  # chin\n\n7,8,9\n", encoding="utf-8")
            lm = load_landmarks(path)
        np.testing.assert_allclose(lm, [[1, 2, 3], [4, 5, 6], [7, 8, 9]])

    def test_load_landmarks_rejects_bad_rows(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "lm.txt"
            path.write_text("1 2\n3 4\n", encoding="utf-8")
            with self.assertRaises(ValueError):
                load_landmarks(path)

    def test_save_point_pairs(self):
        src = np.arange(6, dtype=np.float64).reshape(2, 3)
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "pairs.txt"
            MeshProcessor().save_point_pairs(src, src + 1.0, path)
            data = np.loadtxt(path)
        np.testing.assert_allclose(data, np.hstack([src, src + 1.0]))


if __name__ == '__main__':
    unittest.main()
