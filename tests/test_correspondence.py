import unittest

import numpy as np

from src.elasticreg.correspondence import CorrespondenceFinder
from src.elasticreg.errors import CorrespondenceStarvation
from src.elasticreg.mesh_loader import MeshData


def _grid(n: int = 2, size: float = 1.0, z: float = 0.0, flip: bool = False) -> MeshData:
    xs = np.linspace(0.0, size, n + 1)
    vertices = np.array([[x, y, z] for y in xs for x in xs], dtype=np.float64)
    faces = []
    for j in range(n):
        for i in range(n):
            a = j * (n + 1) + i
            faces.append([a, a + 1, a + n + 2])
            faces.append([a, a + n + 2, a + n + 1])
    faces = np.asarray(faces, dtype=np.int32)
    if flip:
        faces = faces[:, ::-1].copy()
    mesh = MeshData(vertices=vertices, faces=faces)
    mesh.compute_normals()
    return mesh


class TestCorrespondenceFinder(unittest.TestCase):
    def test_identical_meshes_accept_every_vertex(self):
        source = _grid(2)
        finder = CorrespondenceFinder(_grid(2), border=True, minclost=9, dist=2.0)
        corr = finder.find(source, source.vertices)

        self.assertEqual(len(corr), 9)
        np.testing.assert_array_equal(corr.indices, np.arange(9))
        np.testing.assert_allclose(corr.target_points, source.vertices, atol=1e-12)
        np.testing.assert_allclose(corr.distances, 0.0, atol=1e-12)
        self.assertEqual(corr.relaxations, 0)
        self.assertEqual(corr.used_distance, 2.0)

    def test_source_points_come_from_reference(self):
        source = _grid(2)
        reference = source.vertices + np.array([10.0, 0.0, 0.0])
        finder = CorrespondenceFinder(_grid(2), border=True, minclost=1)
        corr = finder.find(source, reference)

        np.testing.assert_allclose(corr.source_points, reference[corr.indices])

    def test_border_hits_rejected_by_default(self):
        target = _grid(4, size=4.0)
        source = _grid(4, size=4.0, z=0.5)
        finder = CorrespondenceFinder(target, border=False, minclost=1, dist=2.0)
        corr = finder.find(source, source.vertices)

        self.assertGreater(len(corr), 0)
        self.assertFalse(corr.border.any())
        border_faces = target.get_border_faces()
        self.assertFalse(border_faces[corr.target_faces].any())

    def test_distance_relaxes_until_minclost_is_met(self):
        target = _grid(2, z=3.0)
        source = _grid(2)
        finder = CorrespondenceFinder(target, border=True, minclost=9, dist=2.0, distinc=1.0)
        corr = finder.find(source, source.vertices)

        self.assertEqual(len(corr), 9)
        self.assertEqual(corr.relaxations, 1)
        self.assertEqual(corr.used_distance, 3.0)
        # source lies below the +z-facing target
        np.testing.assert_allclose(corr.distances, -3.0)
        np.testing.assert_allclose(np.abs(corr.distances), corr.used_distance)

    def test_relaxation_is_bounded(self):
        target = _grid(2, z=3.0)
        source = _grid(2)
        finder = CorrespondenceFinder(
            target, border=True, minclost=9, dist=2.0, distinc=0.25, max_relaxations=2
        )
        with self.assertRaises(CorrespondenceStarvation) as ctx:
            finder.find(source, source.vertices)
        self.assertEqual(ctx.exception.required, 9)
        self.assertEqual(ctx.exception.found, 0)

    def test_opposite_normals_starve_immediately(self):
        target = _grid(2, flip=True)
        source = _grid(2)
        finder = CorrespondenceFinder(target, border=True, minclost=1, rho=np.pi / 2)
        with self.assertRaises(CorrespondenceStarvation):
            finder.find(source, source.vertices)

    def test_minclost_above_vertex_count_starves(self):
        source = _grid(2)
        finder = CorrespondenceFinder(_grid(2), border=True, minclost=10)
        with self.assertRaises(CorrespondenceStarvation) as ctx:
            finder.find(source, source.vertices)
        self.assertEqual(ctx.exception.required, 10)

    def test_reference_shape_must_match(self):
        source = _grid(2)
        finder = CorrespondenceFinder(_grid(2), border=True, minclost=1)
        with self.assertRaises(ValueError):
            finder.find(source, source.vertices[:4])


if __name__ == '__main__':
    unittest.main()
