#!/usr/bin/env python3
import math
import unittest

from rose_converter.animation import sample_channel, sample_pose
from rose_converter.mathutil import quat_angle, quat_from_axis_angle
from rose_converter.scene import Animation, Bone, Channel, Interpolation, Keyframe, Skeleton


def _rotation_channel(mode: Interpolation) -> Channel:
    return Channel(bone=0, interpolation=mode, keyframes=[
        Keyframe(time=0.0, translation=(0.0, 0.0, 0.0), scale=1.0),
        Keyframe(
            time=1.0,
            translation=(10.0, -4.0, 2.0),
            rotation=quat_from_axis_angle((0.0, 0.0, 1.0), math.pi / 2.0),
            scale=3.0,
        ),
    ])


class SampleChannelTests(unittest.TestCase):
    def test_spherical_midpoint_is_half_the_angle(self) -> None:
        _t, rotation, _s = sample_channel(_rotation_channel(Interpolation.SPHERICAL), 0.5)
        self.assertAlmostEqual(math.degrees(quat_angle(rotation)), 45.0, places=3)
        self.assertAlmostEqual(rotation[0], 0.0, places=6)
        self.assertAlmostEqual(rotation[1], 0.0, places=6)
        self.assertAlmostEqual(math.hypot(*rotation), 1.0, places=6)

    def test_linear_blends_translation_and_scale(self) -> None:
        translation, rotation, scale = sample_channel(_rotation_channel(Interpolation.LINEAR), 0.25)
        self.assertAlmostEqual(translation[0], 2.5, places=6)
        self.assertAlmostEqual(translation[1], -1.0, places=6)
        self.assertAlmostEqual(translation[2], 0.5, places=6)
        self.assertAlmostEqual(scale, 1.5, places=6)
        self.assertAlmostEqual(math.hypot(*rotation), 1.0, places=6)

    def test_step_holds_previous_key(self) -> None:
        translation, rotation, scale = sample_channel(_rotation_channel(Interpolation.STEP), 0.99)
        self.assertEqual(translation, (0.0, 0.0, 0.0))
        self.assertEqual(rotation, (0.0, 0.0, 0.0, 1.0))
        self.assertEqual(scale, 1.0)

    def test_times_outside_range_clamp(self) -> None:
        channel = _rotation_channel(Interpolation.SPHERICAL)
        self.assertEqual(sample_channel(channel, -5.0)[0], (0.0, 0.0, 0.0))
        self.assertEqual(sample_channel(channel, 7.0)[0], (10.0, -4.0, 2.0))
        self.assertEqual(sample_channel(channel, 7.0)[2], 3.0)

    def test_empty_channel_raises(self) -> None:
        with self.assertRaises(ValueError):
            sample_channel(Channel(bone=0), 0.0)


class SamplePoseTests(unittest.TestCase):
    def test_unanimated_bones_keep_bind_pose(self) -> None:
        skeleton = Skeleton(name="rig", bones=[
            Bone(name="root", parent=None),
            Bone(name="arm", parent=0, translation=(1.0, 2.0, 3.0), scale=2.0),
        ])
        animation = Animation(name="wave", channels=[_rotation_channel(Interpolation.LINEAR)])
        pose = sample_pose(animation, skeleton, 1.0)
        self.assertEqual(pose[0][0], (10.0, -4.0, 2.0))
        self.assertEqual(pose[1], ((1.0, 2.0, 3.0), (0.0, 0.0, 0.0, 1.0), 2.0))
        self.assertEqual(animation.duration, 1.0)


if __name__ == "__main__":
    unittest.main()
