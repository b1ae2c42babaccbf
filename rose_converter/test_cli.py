#!/usr/bin/env python3
import json
import tempfile
import unittest
from unittest import mock
from pathlib import Path

from rose_converter import cli
from rose_converter.codec import encode_animation, encode_mesh
from rose_converter.scene import (
    Animation,
    Bone,
    Channel,
    Keyframe,
    Material,
    Mesh,
    ObjectInstance,
    Scene,
    Skeleton,
    Vertex,
)


def _quad_mesh(name: str) -> Mesh:
    corners = [(0.0, 0.0), (1.0, 0.0), (1.0, 1.0), (0.0, 1.0)]
    return Mesh(
        name=name,
        vertices=[
            Vertex(position=(u * 2.0, v * 2.0, 0.0), normal=(0.0, 0.0, 1.0), uv1=(u, v))
            for u, v in corners
        ],
        triangles=[(0, 1, 2), (0, 2, 3)],
        bounding_box=((0.0, 0.0, 0.0), (2.0, 2.0, 0.0)),
    )


def _build_test_scene() -> Scene:
    return Scene(
        name="village",
        meshes=[_quad_mesh("floor"), _quad_mesh("roof tile")],
        skeletons=[Skeleton(name="rig", bones=[Bone(name="root", parent=None, translation=(0.0, 0.0, 5.0))])],
        materials=[Material(texture="floor.dds"), Material(texture="roof.dds", two_sided=True)],
        instances=[
            ObjectInstance(name="floor01", mesh=0, material=0),
            ObjectInstance(name="roof01", mesh=1, material=1, position=(0.0, 0.0, 3.0), lightmapped=False),
        ],
    )


def _walk() -> Animation:
    return Animation(name="walk", channels=[
        Channel(bone=0, keyframes=[Keyframe(time=0.0), Keyframe(time=0.5, translation=(0.0, 1.0, 0.0))]),
    ])


class SceneDirectoryTests(unittest.TestCase):
    def test_save_and_load_round_trip(self) -> None:
        scene = _build_test_scene()
        with tempfile.TemporaryDirectory() as tmp:
            zol_path = cli.save_scene(scene, Path(tmp) / "village")
            self.assertEqual(zol_path.name, "village.zol")
            self.assertTrue((zol_path.parent / "floor.zms").is_file())
            self.assertTrue((zol_path.parent / "roof_tile.zms").is_file())
            self.assertTrue((zol_path.parent / "rig.zmd").is_file())

            loaded = cli.load_scene(zol_path)

        self.assertEqual(loaded.name, "village")
        self.assertEqual([m.name for m in loaded.meshes], ["floor", "roof_tile"])
        self.assertEqual(loaded.meshes[0], scene.meshes[0])
        self.assertEqual(loaded.skeletons[0], scene.skeletons[0])
        self.assertEqual(loaded.materials, scene.materials)
        self.assertEqual(loaded.instances, scene.instances)

    def test_animation_files_attach_to_loaded_scene(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            zol_path = cli.save_scene(_build_test_scene(), Path(tmp))
            walk_path = Path(tmp) / "walk.zmo"
            walk_path.write_bytes(encode_animation(_walk()))
            loaded = cli.load_scene(zol_path, [walk_path])
        self.assertEqual([a.name for a in loaded.animations], ["walk"])

    def test_lone_mesh_is_wrapped_in_a_scene(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "house.zms"
            path.write_bytes(encode_mesh(_quad_mesh("house")))
            scene = cli.load_scene(path)
        self.assertEqual(scene.name, "house")
        self.assertEqual(len(scene.instances), 1)
        self.assertEqual(scene.meshes[0].name, "house")

    def test_animations_keep_their_skeleton(self) -> None:
        scene = _build_test_scene()
        scene.skeletons.append(Skeleton(name="tall", bones=[
            Bone(name="root", parent=None),
            Bone(name="arm", parent=0, translation=(0.0, 0.0, 2.0)),
        ]))
        wave = Animation(name="wave", skeleton=1, channels=[
            Channel(bone=1, keyframes=[Keyframe(time=0.0), Keyframe(time=1.0, translation=(1.0, 0.0, 0.0))]),
        ])
        scene.animations = [_walk(), wave]

        with tempfile.TemporaryDirectory() as tmp:
            zol_path = cli.save_scene(scene, Path(tmp))
            self.assertTrue((zol_path.parent / "wave.zmo").is_file())
            loaded = cli.load_scene(zol_path)

        self.assertEqual([s.name for s in loaded.skeletons], ["rig", "tall"])
        self.assertEqual(loaded.animations, scene.animations)
        self.assertEqual([a.skeleton for a in loaded.animations], [0, 1])

    def test_merge_stats(self) -> None:
        total = cli.ConversionStats(converted=1, failures=[{"source": "a"}])
        cli.merge_stats(total, cli.ConversionStats(converted=2, failed=1, failures=[{"source": "b"}]))
        self.assertEqual((total.converted, total.failed), (3, 1))
        self.assertEqual([f["source"] for f in total.failures], ["a", "b"])


class CommandTests(unittest.TestCase):
    def test_gltf_round_trip_through_commands(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            zol_path = cli.save_scene(_build_test_scene(), root / "source")
            report = root / "reports" / "to_gltf.json"

            status = cli.main([
                "to-gltf", str(zol_path), "--output-root", str(root / "gltf"),
                "--workers", "1", "--report", str(report),
            ])
            self.assertEqual(status, 0)
            glb_path = root / "gltf" / "village.glb"
            self.assertTrue(glb_path.is_file())
            summary = json.loads(report.read_text())
            self.assertEqual((summary["total_found"], summary["converted"]), (1, 1))

            status = cli.main([
                "from-gltf", str(glb_path), "--output-root", str(root / "rose"), "--workers", "1",
            ])
            self.assertEqual(status, 0)
            restored = cli.load_scene(root / "rose" / "village" / "village.zol")

        self.assertEqual([i.name for i in restored.instances], ["floor01", "roof01"])
        self.assertEqual([m.texture for m in restored.materials], ["floor.dds", "roof.dds"])
        self.assertEqual(restored.meshes[0].triangles, [(0, 1, 2), (0, 2, 3)])
        self.assertAlmostEqual(restored.instances[1].position[2], 3.0, places=4)

    def test_existing_outputs_are_skipped_unless_forced(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            zol_path = cli.save_scene(_build_test_scene(), root / "source")
            args = ["to-gltf", str(zol_path), "--output-root", str(root / "out"), "--format", "gltf",
                    "--workers", "1", "--report", str(root / "report.json")]
            self.assertEqual(cli.main(args), 0)
            self.assertTrue((root / "out" / "village.bin").is_file())

            self.assertEqual(cli.main(args), 0)
            self.assertEqual(json.loads((root / "report.json").read_text())["skipped_existing"], 1)

            self.assertEqual(cli.main(args + ["--force"]), 0)
            self.assertEqual(json.loads((root / "report.json").read_text())["converted"], 1)

    def test_corrupt_input_is_reported(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            broken = root / "broken.zms"
            broken.write_bytes(b"ZMS0008\x00\x01\x02")
            report = root / "report.json"
            status = cli.main([
                "to-gltf", str(broken), "--output-root", str(root / "out"),
                "--workers", "1", "--report", str(report),
            ])
            self.assertEqual(status, 1)
            summary = json.loads(report.read_text())
        self.assertEqual(summary["skipped_corrupt"], 1)
        self.assertEqual(summary["failures"][0]["type"], "TruncatedError")

    def test_unexpected_errors_are_counted_and_batch_continues(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            first = cli.save_scene(_build_test_scene(), root / "a")
            second = cli.save_scene(_build_test_scene(), root / "b" / "other")
            report = root / "report.json"
            real_export = cli.export_scene
            calls = []

            def flaky_export(scene, options=None):
                calls.append(scene.name)
                if len(calls) == 1:
                    raise RuntimeError("exporter crashed")
                return real_export(scene, options)

            with mock.patch.object(cli, "export_scene", side_effect=flaky_export):
                status = cli.main([
                    "to-gltf", str(first), str(second), "--output-root", str(root / "out"),
                    "--workers", "1", "--report", str(report),
                ])
            summary = json.loads(report.read_text())

        self.assertEqual(status, 1)
        self.assertEqual(len(calls), 2)
        self.assertEqual((summary["converted"], summary["failed"]), (1, 1))
        self.assertEqual(summary["failures"][0]["type"], "unexpected")

    def test_bake_rejects_invalid_settings(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            zol_path = cli.save_scene(_build_test_scene(), root / "source")
            status = cli.main([
                "bake", str(zol_path), "--output-root", str(root / "baked"), "--samples", "0",
            ])
            self.assertEqual(status, 1)
            self.assertFalse((root / "baked").exists())

    def test_bake_command_writes_atlas_and_report(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            zol_path = cli.save_scene(_build_test_scene(), root / "source")
            report = root / "bake.json"
            status = cli.main([
                "bake", str(zol_path), "--output-root", str(root / "baked"),
                "--samples", "4", "--workers", "1", "--report", str(report),
            ])
            self.assertEqual(status, 0)
            self.assertTrue((root / "baked" / "lightmap.png").is_file())
            summary = json.loads(report.read_text())
            baked = cli.load_scene(root / "baked" / "village.zol")

        self.assertEqual(summary["baked"], [0])
        self.assertEqual(baked.lightmap_image, "lightmap.png")
        self.assertEqual(baked.instances[0].atlas_region, 0)
        self.assertTrue(baked.meshes[0].has_uv2)
        self.assertFalse(baked.meshes[1].has_uv2)

    def test_info_command(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            mesh_path = root / "house.zms"
            mesh_path.write_bytes(encode_mesh(_quad_mesh("house")))
            anim_path = root / "walk.zmo"
            anim_path.write_bytes(encode_animation(_walk()))

            self.assertIn("ZMS0008 4 vertices, 2 triangles", cli.describe_asset(mesh_path))
            self.assertIn("'walk' 30 fps, 1 channels, 0.500s", cli.describe_asset(anim_path))
            self.assertEqual(cli.main(["info", str(mesh_path), str(anim_path)]), 0)

            bogus = root / "bogus.zms"
            bogus.write_bytes(b"XYZ0001\x00")
            self.assertEqual(cli.main(["info", str(bogus)]), 1)


if __name__ == "__main__":
    unittest.main()
