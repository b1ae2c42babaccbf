#!/usr/bin/env python3
import copy
import itertools
import json
import threading
import unittest

import numpy as np

from rose_converter.atlas import regions_overlap
from rose_converter.errors import AtlasOverflowError, DegenerateGeometryError
from rose_converter.lightmap import BakeConfig, bake, dilate, hemisphere_directions
from rose_converter.scene import AtlasRegion, Bone, Material, Mesh, ObjectInstance, Scene, Skeleton, Vertex


def _quad_mesh(name: str = "quad", size: float = 1.0) -> Mesh:
    corners = [(0.0, 0.0), (1.0, 0.0), (1.0, 1.0), (0.0, 1.0)]
    return Mesh(
        name=name,
        vertices=[
            Vertex(position=(u * size, v * size, 0.0), normal=(0.0, 0.0, 1.0), uv1=(u, v))
            for u, v in corners
        ],
        triangles=[(0, 1, 2), (0, 2, 3)],
    )


def _scene(instances, meshes=None) -> Scene:
    return Scene(
        name="bake",
        meshes=meshes or [_quad_mesh()],
        materials=[Material(texture="ground.dds")],
        instances=instances,
    )


class QuadBakeTests(unittest.TestCase):
    def test_unit_quad_fills_its_block(self) -> None:
        scene = _scene([ObjectInstance(name="ground", mesh=0, material=0)])
        result = bake(scene, BakeConfig())

        self.assertTrue(result.report.ok)
        self.assertEqual(result.report.baked, [0])
        self.assertEqual((result.atlas.width, result.atlas.height), (32, 32))
        region = AtlasRegion(instance=0, x=0, y=0, width=20, height=20, padding=2)
        self.assertEqual(result.atlas.regions, [region])
        self.assertEqual(result.scene.atlas_regions, [region])
        self.assertEqual(result.scene.instances[0].atlas_region, 0)
        self.assertEqual(result.scene.lightmap_image, "lightmap.png")

        block = result.atlas.region_pixels(region)
        self.assertTrue((block == 255).all())
        self.assertEqual(int(result.atlas.pixels.sum()), 255 * 20 * 20)

        uv2 = [vertex.uv2 for vertex in result.scene.meshes[0].vertices]
        expected = [(2 / 32, 2 / 32), (18 / 32, 2 / 32), (18 / 32, 18 / 32), (2 / 32, 18 / 32)]
        for got, want in zip(uv2, expected):
            self.assertAlmostEqual(got[0], want[0], places=9)
            self.assertAlmostEqual(got[1], want[1], places=9)

    def test_roof_occludes_ground(self) -> None:
        roof = _quad_mesh("roof", size=1000.0)
        scene = _scene(
            [
                ObjectInstance(name="ground", mesh=0, material=0),
                ObjectInstance(name="roof", mesh=1, material=0, position=(-500.0, -500.0, 1.0),
                               lightmapped=False),
            ],
            meshes=[_quad_mesh(), roof],
        )
        result = bake(scene, BakeConfig())
        self.assertEqual(result.report.baked, [0])
        interior = result.atlas.pixels[2:18, 2:18]
        self.assertLessEqual(int(interior.max()), 70)
        self.assertGreaterEqual(int(interior.min()), 64)
        self.assertIsNone(result.scene.instances[1].atlas_region)

    def test_bake_is_deterministic(self) -> None:
        scene = _scene([
            ObjectInstance(name="ground", mesh=0, material=0),
            ObjectInstance(name="wall", mesh=0, material=0, position=(0.2, 0.2, 0.3),
                           scale=(0.5, 0.5, 1.0)),
        ])
        first = bake(scene, BakeConfig(sample_count=16, seed=7))
        second = bake(scene, BakeConfig(sample_count=16, seed=7))
        self.assertTrue(np.array_equal(first.atlas.pixels, second.atlas.pixels))
        self.assertEqual(first.scene, second.scene)

    def test_worker_pool_matches_serial(self) -> None:
        scene = _scene([
            ObjectInstance(name=f"tile{i}", mesh=0, material=0, position=(2.0 * i, 0.0, 0.0))
            for i in range(3)
        ])
        serial = bake(scene, BakeConfig(sample_count=8))
        pooled = bake(scene, BakeConfig(sample_count=8, workers=2))
        self.assertEqual(sorted(pooled.report.baked), [0, 1, 2])
        self.assertTrue(np.array_equal(serial.atlas.pixels, pooled.atlas.pixels))

    def test_concurrent_bakes_keep_their_own_scene(self) -> None:
        roof = _quad_mesh("roof", size=1000.0)
        covered = _scene(
            [ObjectInstance(name=f"ground{i}", mesh=0, material=0, position=(2.0 * i, 0.0, 0.0))
             for i in range(6)]
            + [ObjectInstance(name="roof", mesh=1, material=0, position=(-500.0, -500.0, 1.0),
                              lightmapped=False)],
            meshes=[_quad_mesh(), roof],
        )
        open_sky = _scene([
            ObjectInstance(name=f"tile{i}", mesh=0, material=0, position=(2.0 * i, 0.0, 0.0))
            for i in range(6)
        ])
        jobs = {
            "covered": (covered, BakeConfig(sample_count=8)),
            "open": (open_sky, BakeConfig(sample_count=8, ambient_level=0.1)),
        }
        expected = {key: bake(scene, config).atlas.pixels for key, (scene, config) in jobs.items()}
        self.assertLessEqual(int(expected["covered"].max()), 70)
        self.assertEqual(int(expected["open"].max()), 217)

        results = {key: [] for key in jobs}
        barrier = threading.Barrier(len(jobs))

        def run(key: str) -> None:
            scene, config = jobs[key]
            barrier.wait()
            for _ in range(3):
                results[key].append(bake(scene, config).atlas.pixels)

        threads = [threading.Thread(target=run, args=(key,)) for key in jobs]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        for key, runs in results.items():
            self.assertEqual(len(runs), 3)
            for pixels in runs:
                self.assertTrue(np.array_equal(pixels, expected[key]), key)

    def test_input_scene_is_not_modified(self) -> None:
        scene = _scene([
            ObjectInstance(name="a", mesh=0, material=0),
            ObjectInstance(name="b", mesh=0, material=0, position=(5.0, 0.0, 0.0)),
        ])
        before = copy.deepcopy(scene)
        bake(scene, BakeConfig(sample_count=4))
        self.assertEqual(scene, before)


class AtlasLayoutTests(unittest.TestCase):
    def test_regions_do_not_overlap(self) -> None:
        scales = [1.0, 2.0, 0.5, 1.5, 3.0, 0.25]
        scene = _scene([
            ObjectInstance(name=f"slab{i}", mesh=0, material=0, position=(10.0 * i, 0.0, 0.0),
                           scale=(s, s, 1.0))
            for i, s in enumerate(scales)
        ])
        result = bake(scene, BakeConfig(sample_count=4))
        self.assertEqual(result.report.baked, list(range(len(scales))))
        regions = result.scene.atlas_regions
        for region in regions:
            self.assertLessEqual(region.x + region.width, result.atlas.width)
            self.assertLessEqual(region.y + region.height, result.atlas.height)
        for a, b in itertools.combinations(regions, 2):
            self.assertFalse(regions_overlap(a, b))

        # Each instance's secondary UVs stay inside its own block interior.
        for index, instance in enumerate(result.scene.instances):
            region = regions[instance.atlas_region]
            self.assertEqual(region.instance, index)
            x, y, w, h = region.interior
            for vertex in result.scene.meshes[instance.mesh].vertices:
                u = vertex.uv2[0] * result.atlas.width
                v = vertex.uv2[1] * result.atlas.height
                self.assertTrue(x - 1e-6 <= u <= x + w + 1e-6)
                self.assertTrue(y - 1e-6 <= v <= y + h + 1e-6)

    def test_shared_mesh_is_cloned_per_instance(self) -> None:
        scene = _scene([
            ObjectInstance(name="left", mesh=0, material=0),
            ObjectInstance(name="right", mesh=0, material=0, position=(3.0, 0.0, 0.0)),
        ])
        result = bake(scene, BakeConfig(sample_count=4))
        baked = result.scene
        self.assertEqual(len(baked.meshes), 2)
        self.assertEqual(baked.instances[0].mesh, 1)
        self.assertEqual(baked.meshes[1].name, "quad_lm0")
        self.assertEqual(baked.instances[1].mesh, 0)
        self.assertNotEqual(
            baked.meshes[0].vertices[0].uv2,
            baked.meshes[1].vertices[0].uv2,
        )

    def test_unused_vertex_stays_inside_its_block(self) -> None:
        mesh = _quad_mesh()
        mesh.vertices.append(Vertex(position=(5.0, 5.0, 0.0), normal=(0.0, 0.0, 1.0), uv1=(3.0, 3.0)))
        result = bake(_scene([ObjectInstance(name="ground", mesh=0, material=0)], meshes=[mesh]))

        self.assertEqual(result.report.baked, [0])
        stray = result.scene.meshes[0].vertices[4].uv2
        self.assertAlmostEqual(stray[0], 18 / 32, places=9)
        self.assertAlmostEqual(stray[1], 18 / 32, places=9)
        for vertex in result.scene.meshes[0].vertices:
            self.assertTrue(0.0 <= vertex.uv2[0] <= 1.0 and 0.0 <= vertex.uv2[1] <= 1.0)

    def test_skinned_and_unlit_instances_are_skipped(self) -> None:
        scene = _scene([
            ObjectInstance(name="ground", mesh=0, material=0),
            ObjectInstance(name="npc", mesh=0, material=0, skeleton=0),
            ObjectInstance(name="decal", mesh=0, material=0, lightmapped=False),
        ])
        scene.skeletons = [Skeleton(name="rig", bones=[Bone(name="root", parent=None)])]
        result = bake(scene, BakeConfig(sample_count=4))
        self.assertEqual(result.report.baked, [0])
        self.assertEqual(len(result.scene.meshes), 2)
        self.assertIsNone(result.scene.meshes[0].vertices[0].uv2)


class FailureIsolationTests(unittest.TestCase):
    def test_overflow_fails_only_that_instance(self) -> None:
        scene = _scene([
            ObjectInstance(name="big", mesh=0, material=0),
            ObjectInstance(name="small", mesh=0, material=0, position=(3.0, 0.0, 0.0),
                           scale=(0.5, 0.5, 1.0)),
        ])
        result = bake(scene, BakeConfig(sample_count=4, max_atlas_size=16))
        report = result.report

        self.assertFalse(report.ok)
        self.assertEqual(report.baked, [1])
        self.assertEqual(len(report.failures), 1)
        self.assertIsInstance(report.failures[0], AtlasOverflowError)
        self.assertEqual(report.failures[0].instance, 0)
        self.assertEqual((report.atlas_width, report.atlas_height), (16, 16))
        self.assertIsNone(result.scene.instances[0].atlas_region)
        self.assertEqual(result.scene.atlas_regions[0], AtlasRegion(1, 0, 0, 12, 12, 2))

        summary = json.loads(json.dumps(report.to_dict()))
        self.assertEqual(summary["failures"][0]["type"], "AtlasOverflowError")

    def test_degenerate_geometry_is_reported(self) -> None:
        collapsed = _quad_mesh("collapsed")
        for vertex in collapsed.vertices:
            vertex.uv1 = (0.5, 0.5)
        empty = Mesh(name="empty")
        scene = _scene(
            [
                ObjectInstance(name="ok", mesh=0, material=0),
                ObjectInstance(name="collapsed", mesh=1, material=0),
                ObjectInstance(name="empty", mesh=2, material=0),
                ObjectInstance(name="flat", mesh=0, material=0, scale=(0.0, 1.0, 1.0)),
            ],
            meshes=[_quad_mesh(), collapsed, empty],
        )
        result = bake(scene, BakeConfig(sample_count=4))
        self.assertEqual(result.report.baked, [0])
        self.assertEqual(sorted(exc.instance for exc in result.report.failures), [1, 2, 3])
        for exc in result.report.failures:
            self.assertIsInstance(exc, DegenerateGeometryError)

    def test_invalid_config_is_rejected(self) -> None:
        scene = _scene([ObjectInstance(name="ground", mesh=0, material=0)])
        for config in (
            BakeConfig(sample_count=0),
            BakeConfig(padding_texels=-1),
            BakeConfig(texel_density=0.0),
            BakeConfig(texel_density=float("nan")),
            BakeConfig(max_atlas_size=0),
        ):
            with self.assertRaises(ValueError):
                bake(scene, config)

    def test_cancel_before_start(self) -> None:
        cancel = threading.Event()
        cancel.set()
        result = bake(_scene([ObjectInstance(name="ground", mesh=0, material=0)]), cancel=cancel)
        self.assertTrue(result.report.cancelled)
        self.assertFalse(result.report.ok)
        self.assertEqual(result.report.baked, [])
        self.assertIsNone(result.scene.lightmap_image)


class HelperTests(unittest.TestCase):
    def test_hemisphere_directions_are_unit_and_upward(self) -> None:
        directions = hemisphere_directions(64, seed=3)
        self.assertEqual(directions.shape, (64, 3))
        self.assertTrue(np.allclose(np.linalg.norm(directions, axis=1), 1.0))
        self.assertTrue((directions[:, 2] >= 0.0).all())
        self.assertTrue(np.array_equal(directions, hemisphere_directions(64, seed=3)))

    def test_dilate_fills_from_neighbours(self) -> None:
        values = np.zeros((3, 4))
        filled = np.zeros((3, 4), dtype=bool)
        values[1, 1] = 0.8
        filled[1, 1] = True
        grown = dilate(values, filled)
        self.assertTrue(np.allclose(grown, 0.8))


if __name__ == "__main__":
    unittest.main()
