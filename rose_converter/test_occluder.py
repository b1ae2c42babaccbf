#!/usr/bin/env python3
import unittest

import numpy as np

from rose_converter.occluder import Occluder, world_triangles
from rose_converter.scene import Material, Mesh, ObjectInstance, Scene, Vertex


def _plane_triangles(z: float, size: float = 10.0) -> np.ndarray:
    return np.asarray([
        [[-size, -size, z], [size, -size, z], [size, size, z]],
        [[-size, -size, z], [size, size, z], [-size, size, z]],
    ], dtype=np.float64)


def _grid_triangles(count: int) -> np.ndarray:
    """Small tiles spread along x so the tree needs several levels."""
    tiles = []
    for i in range(count):
        x = float(i) * 3.0
        tiles.append([[x, 0.0, 5.0], [x + 1.0, 0.0, 5.0], [x, 1.0, 5.0]])
    return np.asarray(tiles, dtype=np.float64)


class OccluderTests(unittest.TestCase):
    def test_hit_and_miss(self) -> None:
        occluder = Occluder(_plane_triangles(5.0))
        origins = [(0.0, 0.0, 0.0), (0.0, 0.0, 0.0), (20.0, 0.0, 0.0), (0.0, 0.0, 6.0)]
        directions = [(0.0, 0.0, 1.0), (0.0, 0.0, -1.0), (0.0, 0.0, 1.0), (0.0, 0.0, 1.0)]
        hits = occluder.any_hit(origins, directions, 100.0)
        self.assertEqual(hits.tolist(), [True, False, False, False])

    def test_max_distance_limits_hits(self) -> None:
        occluder = Occluder(_plane_triangles(5.0))
        up = [(0.0, 0.0, 1.0)]
        self.assertFalse(occluder.any_hit([(0.0, 0.0, 0.0)], up, 4.0)[0])
        self.assertTrue(occluder.any_hit([(0.0, 0.0, 0.0)], up, 6.0)[0])

    def test_deep_tree_matches_brute_force(self) -> None:
        triangles = _grid_triangles(100)
        occluder = Occluder(triangles)
        self.assertGreater(len(occluder.node_min), 1)

        # One ray through each tile, one through each gap, two outside the row.
        xs = [3.0 * i + 0.25 for i in range(100)] + [3.0 * i + 1.75 for i in range(100)] + [-2.0, 305.0]
        origins = [(x, 0.25, 0.0) for x in xs]
        directions = [(0.0, 0.0, 1.0)] * len(xs)
        hits = occluder.any_hit(origins, directions, 100.0)
        self.assertEqual(hits.tolist(), [True] * 100 + [False] * 102)

    def test_empty_occluder(self) -> None:
        occluder = Occluder(np.zeros((0, 3, 3)))
        self.assertEqual(occluder.any_hit([(0.0, 0.0, 0.0)], [(0.0, 0.0, 1.0)], 10.0).tolist(), [False])

    def test_scene_occluder_skips_skinned_instances(self) -> None:
        mesh = Mesh(
            name="tri",
            vertices=[
                Vertex((-10.0, -10.0, 0.0), (0.0, 0.0, 1.0), (0.0, 0.0)),
                Vertex((10.0, -10.0, 0.0), (0.0, 0.0, 1.0), (1.0, 0.0)),
                Vertex((0.0, 10.0, 0.0), (0.0, 0.0, 1.0), (0.0, 1.0)),
            ],
            triangles=[(0, 1, 2)],
        )
        scene = Scene(
            meshes=[mesh],
            materials=[Material(texture="")],
            instances=[
                ObjectInstance(name="roof", mesh=0, material=0, position=(0.0, 0.0, 5.0)),
                ObjectInstance(name="npc", mesh=0, material=0, skeleton=0, position=(0.0, 0.0, 2.0)),
            ],
        )
        world = world_triangles(scene, scene.instances[0])
        self.assertEqual(world.shape, (1, 3, 3))
        self.assertTrue(np.allclose(world[:, :, 2], 5.0))

        occluder = Occluder.from_scene(scene)
        self.assertEqual(occluder.num_triangles, 1)
        up = [(0.0, 0.0, 1.0)]
        self.assertFalse(occluder.any_hit([(0.0, 0.0, 0.0)], up, 4.0)[0])
        self.assertTrue(occluder.any_hit([(0.0, 0.0, 0.0)], up, 10.0)[0])


if __name__ == "__main__":
    unittest.main()
