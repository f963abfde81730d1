import unittest

import numpy as np

from src.elasticreg.alignment_utils import (
    RigidICPSpec,
    angle_between,
    rigid_icp,
    rigid_landmark_alignment,
)
from src.elasticreg.mesh_loader import MeshData
from src.elasticreg.mesh_ops import transform_points


def _rotation_z(deg: float) -> np.ndarray:
    t = np.deg2rad(deg)
    c, s = np.cos(t), np.sin(t)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def _rigid(rot: np.ndarray, shift, scale: float = 1.0) -> np.ndarray:
    mat = np.eye(4)
    mat[:3, :3] = scale * rot
    mat[:3, 3] = shift
    return mat


def _saddle(n: int = 6, size: float = 3.0) -> MeshData:
    xs = np.linspace(-0.5 * size, 0.5 * size, n + 1)
    vertices = np.array([[x, y, 0.2 * x * y] for y in xs for x in xs], dtype=np.float64)
    faces = []
    for j in range(n):
        for i in range(n):
            a = j * (n + 1) + i
            faces.append([a, a + 1, a + n + 2])
            faces.append([a, a + n + 2, a + n + 1])
    mesh = MeshData(vertices=vertices, faces=np.asarray(faces, dtype=np.int32))
    mesh.compute_normals()
    return mesh


class TestAngleBetween(unittest.TestCase):
    def test_basic_angles(self):
        a = np.array([[1.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 2.0, 0.0]])
        b = np.array([[0.0, 3.0, 0.0], [-1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        np.testing.assert_allclose(angle_between(a, b), [np.pi / 2, np.pi, 0.0], atol=1e-12)

    def test_zero_vector_counts_as_opposite(self):
        out = angle_between(np.zeros((1, 3)), np.array([[0.0, 0.0, 1.0]]))
        np.testing.assert_allclose(out, [np.pi])


class TestRigidLandmarkAlignment(unittest.TestCase):
    def setUp(self):
        self.moving = np.array(
            [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 2.0, 0.0], [0.0, 0.0, 3.0], [1.0, 1.0, 1.0]]
        )

    def test_recovers_rigid_motion(self):
        expected = _rigid(_rotation_z(30.0), [1.0, -2.0, 0.5])
        fixed = transform_points(self.moving, expected)

        mat = rigid_landmark_alignment(self.moving, fixed, scale=False)
        np.testing.assert_allclose(mat, expected, atol=1e-9)

    def test_recovers_scale_only_when_allowed(self):
        expected = _rigid(_rotation_z(-45.0), [0.0, 0.0, 1.0], scale=2.0)
        fixed = transform_points(self.moving, expected)

        with_scale = rigid_landmark_alignment(self.moving, fixed, scale=True)
        np.testing.assert_allclose(transform_points(self.moving, with_scale), fixed, atol=1e-9)

        without = rigid_landmark_alignment(self.moving, fixed, scale=False)
        np.testing.assert_allclose(np.linalg.det(without[:3, :3]), 1.0, atol=1e-9)

    def test_reflection_needs_permission(self):
        mirror = np.diag([1.0, 1.0, -1.0])
        fixed = self.moving @ mirror.T

        proper = rigid_landmark_alignment(self.moving, fixed, reflection=False)
        self.assertGreater(np.linalg.det(proper[:3, :3]), 0.0)

        improper = rigid_landmark_alignment(self.moving, fixed, reflection=True)
        np.testing.assert_allclose(transform_points(self.moving, improper), fixed, atol=1e-9)

    def test_rejects_mismatched_sets(self):
        with self.assertRaises(ValueError):
            rigid_landmark_alignment(self.moving, self.moving[:4])
        with self.assertRaises(ValueError):
            rigid_landmark_alignment(self.moving[:2], self.moving[:2])


class TestRigidICP(unittest.TestCase):
    def test_spec_from_sequence(self):
        spec = RigidICPSpec.from_sequence([5, 0.5, 0.8, 0])
        self.assertEqual(spec, RigidICPSpec(iterations=5, rhotol=0.5, uprange=0.8, scale=False))

        with self.assertRaises(ValueError):
            RigidICPSpec.from_sequence([5, 0.5, 0.8])
        with self.assertRaises(ValueError):
            RigidICPSpec(uprange=0.0)

    def test_landmark_seeded_icp_keeps_exact_alignment(self):
        target = _saddle()
        motion = _rigid(_rotation_z(20.0), [0.5, 0.25, -1.0])
        inverse = np.linalg.inv(motion)
        source = target.with_vertices(transform_points(target.vertices, inverse))

        corners = [0, 6, 42, 48]
        lm1 = source.vertices[corners]
        lm2 = target.vertices[corners]

        spec = RigidICPSpec(iterations=3, rhotol=np.pi / 2, uprange=0.9, scale=False)
        mat, cost = rigid_icp(source, target, spec, lm1=lm1, lm2=lm2)

        np.testing.assert_allclose(transform_points(source.vertices, mat), target.vertices, atol=1e-6)
        self.assertLess(cost, 1e-10)

    def test_icp_reduces_small_offset(self):
        target = _saddle()
        source = target.with_vertices(target.vertices + np.array([0.0, 0.0, 0.3]))

        spec = RigidICPSpec(iterations=20, rhotol=np.pi / 2, uprange=1.0, scale=False)
        mat, _ = rigid_icp(source, target, spec)

        before = float(np.mean(np.abs(source.vertices[:, 2] - target.vertices[:, 2])))
        moved = transform_points(source.vertices, mat)
        after = float(np.mean(np.abs(moved[:, 2] - target.vertices[:, 2])))
        self.assertLess(after, before)


if __name__ == '__main__':
    unittest.main()
