"""Keyframe sampling for skeletal animation channels."""

from __future__ import annotations

import bisect
from typing import List, Tuple

from .mathutil import quat_nlerp, quat_slerp, vector_lerp
from .scene import Animation, Channel, Interpolation, Keyframe, Quat, Skeleton, Vec3

Pose = Tuple[Vec3, Quat, float]


def _bracket(keyframes: List[Keyframe], time: float) -> Tuple[Keyframe, Keyframe, float]:
    """Return the keyframes around *time* and the blend factor between them."""
    times = [key.time for key in keyframes]
    if time <= times[0]:
        return keyframes[0], keyframes[0], 0.0
    if time >= times[-1]:
        return keyframes[-1], keyframes[-1], 0.0

    after = bisect.bisect_right(times, time)
    before = after - 1
    span = times[after] - times[before]
    factor = (time - times[before]) / span if span > 0.0 else 0.0
    return keyframes[before], keyframes[after], factor


def sample_channel(channel: Channel, time: float) -> Pose:
    """Sample (translation, rotation, scale) of *channel* at *time* seconds.

    Times outside the keyed range clamp to the first / last keyframe.
    """
    if not channel.keyframes:
        raise ValueError(f"channel for bone {channel.bone} has no keyframes")

    before, after, factor = _bracket(channel.keyframes, time)
    if before is after or channel.interpolation == Interpolation.STEP:
        return before.translation, before.rotation, before.scale

    translation = vector_lerp(before.translation, after.translation, factor)
    if channel.interpolation == Interpolation.SPHERICAL:
        rotation = quat_slerp(before.rotation, after.rotation, factor)
    else:
        rotation = quat_nlerp(before.rotation, after.rotation, factor)
    scale = before.scale + (after.scale - before.scale) * factor
    return translation, rotation, scale  # type: ignore[return-value]


def sample_pose(animation: Animation, skeleton: Skeleton, time: float) -> List[Pose]:
    """Local pose of every bone at *time*; unanimated bones keep their bind pose."""
    pose: List[Pose] = [
        (bone.translation, bone.rotation, bone.scale) for bone in skeleton.bones
    ]
    for channel in animation.channels:
        if 0 <= channel.bone < len(pose) and channel.keyframes:
            pose[channel.bone] = sample_channel(channel, time)
    return pose
