"""
codec.py
========

Binary encode/decode for the ROSE asset files handled by this package:

  ZMS  mesh        (vertices + triangle list)
  ZMD  skeleton    (bones + dummy attachment points)
  ZMO  animation   (per-bone keyframe channels)
  ZOL  object list (material pool, placed instances, lightmap regions)

Every file starts with an 8 byte identifier: three tag letters, four version
digits and a NUL, e.g. ``b"ZMS0008\\x00"``. All scalars are little-endian and
floats are IEEE-754 f32. Bytes following the last known block are kept as an
opaque ``tail`` and written back verbatim, so vendor extensions survive a
decode/encode round trip.
"""

from __future__ import annotations

import enum
import math
import struct
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .errors import (
    FormatError,
    InvalidAnimationError,
    InvalidMeshError,
    InvalidSkeletonError,
    InvalidWeightsError,
    TruncatedError,
    UnknownFormatError,
    UnsupportedFeatureError,
)
from .scene import (
    Animation,
    AtlasRegion,
    Bone,
    Channel,
    Interpolation,
    Keyframe,
    Material,
    Mesh,
    ObjectInstance,
    Scene,
    Skeleton,
    Vec3,
    Vertex,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

IDENTIFIER_SIZE = 8

MESH_VERSION = 8
SKELETON_VERSION = 3
ANIMATION_VERSION = 3
OBJECT_LIST_VERSION = 2
# Version 1 object lists have no animation pool.
OBJECT_LIST_ANIMATIONS_SINCE = 2

# Vertex format flags (ZMS header).
VF_POSITION = 1 << 1
VF_NORMAL = 1 << 2
VF_COLOR = 1 << 3
VF_BONE_WEIGHT = 1 << 4
VF_BONE_INDEX = 1 << 5
VF_TANGENT = 1 << 6
VF_UV1 = 1 << 7
VF_UV2 = 1 << 8
VF_UV3 = 1 << 9
VF_UV4 = 1 << 10

VF_REQUIRED = VF_POSITION | VF_NORMAL | VF_UV1
VF_SUPPORTED = VF_REQUIRED | VF_BONE_WEIGHT | VF_BONE_INDEX | VF_UV2

# A vertex whose weights sum within this distance of 1.0 is kept as-is.
WEIGHT_EPSILON = 1e-4

MAX_INDEXED_VERTICES = 0xFFFF

MESH_HEADER = struct.Struct("<I3f3fII")
SKELETON_HEADER = struct.Struct("<II")
BONE_PARENT = struct.Struct("<i")
BONE_TRANSFORM = struct.Struct("<3f4ff")
ANIMATION_HEADER = struct.Struct("<II")
CHANNEL_HEADER = struct.Struct("<IB3xI")
KEYFRAME = struct.Struct("<f3f4ff")
TRIANGLE = struct.Struct("<3H")
MATERIAL_RECORD = struct.Struct("<BBBx")
INSTANCE_RECORD = struct.Struct("<IiI3f4f3fB3xi")
REGION_RECORD = struct.Struct("<I6H")
ANIMATION_REF_RECORD = struct.Struct("<i")


class AssetKind(enum.Enum):
    MESH = b"ZMS"
    SKELETON = b"ZMD"
    ANIMATION = b"ZMO"
    OBJECT_LIST = b"ZOL"


# ---------------------------------------------------------------------------
# Byte cursor
# ---------------------------------------------------------------------------

class _Reader:
    def __init__(self, data: bytes, what: str) -> None:
        self.data = data
        self.pos = 0
        self.what = what

    @property
    def remaining(self) -> int:
        return len(self.data) - self.pos

    def need(self, size: int, context: str) -> None:
        if size > self.remaining:
            raise TruncatedError(
                f"{self.what}: {context} truncated at offset {self.pos} "
                f"(need {size} bytes, have {self.remaining})"
            )

    def take(self, size: int, context: str) -> bytes:
        self.need(size, context)
        chunk = self.data[self.pos:self.pos + size]
        self.pos += size
        return chunk

    def unpack(self, layout: struct.Struct, context: str) -> Tuple:
        self.need(layout.size, context)
        values = layout.unpack_from(self.data, self.pos)
        self.pos += layout.size
        return values

    def string(self, context: str) -> str:
        (length,) = struct.unpack("<H", self.take(2, context))
        # surrogateescape keeps undecodable bytes so they encode back unchanged.
        return self.take(length, context).decode("utf-8", errors="surrogateescape")

    def tail(self) -> bytes:
        return bytes(self.data[self.pos:])


def _pack_string(value: str) -> bytes:
    raw = value.encode("utf-8", errors="surrogateescape")
    if len(raw) > 0xFFFF:
        raise UnsupportedFeatureError(f"string too long ({len(raw)} bytes): {value[:32]!r}...")
    return struct.pack("<H", len(raw)) + raw


def _identifier(kind: AssetKind, version: int) -> bytes:
    return kind.value + f"{version:04d}".encode("ascii") + b"\x00"


def read_identifier(data: bytes) -> Tuple[AssetKind, int]:
    """Return the asset kind and version encoded in the first 8 bytes."""
    if len(data) < IDENTIFIER_SIZE:
        raise TruncatedError(f"File too small for identifier: {len(data)} bytes")

    raw = bytes(data[:IDENTIFIER_SIZE])
    try:
        kind = AssetKind(raw[:3])
    except ValueError:
        raise UnknownFormatError(f"Unknown asset tag: {raw[:3]!r}") from None

    digits = raw[3:7]
    if not digits.isdigit() or raw[7] != 0:
        raise UnknownFormatError(f"Malformed identifier: {raw!r}")
    return kind, int(digits)


def _expect_identifier(reader: _Reader, kind: AssetKind, supported: Sequence[int]) -> int:
    found_kind, version = read_identifier(reader.data)
    if found_kind is not kind:
        raise UnknownFormatError(
            f"Expected {kind.value.decode()} file, found {found_kind.value.decode()}"
        )
    if version not in supported:
        raise UnknownFormatError(
            f"Unsupported {kind.value.decode()} version {version:04d}"
        )
    reader.pos = IDENTIFIER_SIZE
    return version


def _round_f32(values: Sequence[float]) -> Tuple[float, ...]:
    return struct.unpack(f"<{len(values)}f", struct.pack(f"<{len(values)}f", *values))


# ---------------------------------------------------------------------------
# Mesh (ZMS)
# ---------------------------------------------------------------------------

def _vertex_layout(flags: int) -> struct.Struct:
    fmt = "<3f3f"
    if flags & VF_BONE_WEIGHT:
        fmt += "4f"
    if flags & VF_BONE_INDEX:
        fmt += "4H"
    fmt += "2f"
    if flags & VF_UV2:
        fmt += "2f"
    return struct.Struct(fmt)


def normalize_weights(
    weights: Tuple[float, ...],
    vertex_index: int,
) -> Tuple[float, float, float, float]:
    if any(not math.isfinite(w) or w < 0.0 for w in weights):
        raise InvalidWeightsError(f"Vertex {vertex_index} has invalid bone weights {weights}")

    total = sum(weights)
    if abs(total - 1.0) <= WEIGHT_EPSILON:
        return weights  # type: ignore[return-value]
    if total <= WEIGHT_EPSILON:
        raise InvalidWeightsError(
            f"Vertex {vertex_index} bone weights sum to {total:.6f}, cannot normalize"
        )
    return _round_f32([w / total for w in weights])  # type: ignore[return-value]


def decode_mesh(data: bytes, name: str = "mesh") -> Mesh:
    """Decode a ZMS file."""
    reader = _Reader(data, f"ZMS '{name}'")
    version = _expect_identifier(reader, AssetKind.MESH, (6, 7, 8))

    flags, min_x, min_y, min_z, max_x, max_y, max_z, num_vertices, num_triangles = (
        reader.unpack(MESH_HEADER, "header")
    )

    if flags & VF_REQUIRED != VF_REQUIRED:
        raise UnsupportedFeatureError(
            f"ZMS '{name}': format 0x{flags:X} lacks position/normal/uv1"
        )
    if flags & ~VF_SUPPORTED:
        raise UnsupportedFeatureError(
            f"ZMS '{name}': unsupported vertex attributes 0x{flags & ~VF_SUPPORTED:X}"
        )
    skinned = bool(flags & VF_BONE_WEIGHT)
    if skinned != bool(flags & VF_BONE_INDEX):
        raise UnsupportedFeatureError(
            f"ZMS '{name}': bone weights and bone indices must be present together"
        )

    layout = _vertex_layout(flags)
    reader.need(
        num_vertices * layout.size + num_triangles * TRIANGLE.size,
        f"{num_vertices} vertices + {num_triangles} triangles",
    )

    vertex_block = reader.take(num_vertices * layout.size, "vertices")
    vertices: List[Vertex] = []
    for index, values in enumerate(layout.iter_unpack(vertex_block)):
        position = tuple(values[0:3])
        normal = tuple(values[3:6])
        pos = 6
        bone_weights = None
        bone_indices = None
        if skinned:
            bone_weights = normalize_weights(values[pos:pos + 4], index)
            bone_indices = tuple(values[pos + 4:pos + 8])
            pos += 8
        uv1 = tuple(values[pos:pos + 2])
        uv2 = tuple(values[pos + 2:pos + 4]) if flags & VF_UV2 else None
        vertices.append(Vertex(
            position=position,  # type: ignore[arg-type]
            normal=normal,  # type: ignore[arg-type]
            uv1=uv1,  # type: ignore[arg-type]
            uv2=uv2,  # type: ignore[arg-type]
            bone_indices=bone_indices,  # type: ignore[arg-type]
            bone_weights=bone_weights,
        ))

    triangle_block = reader.take(num_triangles * TRIANGLE.size, "triangles")
    triangles: List[Tuple[int, int, int]] = []
    for index, triangle in enumerate(TRIANGLE.iter_unpack(triangle_block)):
        if max(triangle) >= num_vertices:
            raise InvalidMeshError(
                f"ZMS '{name}': triangle {index} references vertex {max(triangle)} "
                f"(vertex count {num_vertices})"
            )
        triangles.append(triangle)

    return Mesh(
        name=name,
        vertices=vertices,
        triangles=triangles,
        bounding_box=((min_x, min_y, min_z), (max_x, max_y, max_z)),
        version=version,
        tail=reader.tail(),
    )


def mesh_bounds(mesh: Mesh) -> Tuple[Vec3, Vec3]:
    if not mesh.vertices:
        return (0.0, 0.0, 0.0), (0.0, 0.0, 0.0)
    lo = [float("inf")] * 3
    hi = [float("-inf")] * 3
    for vertex in mesh.vertices:
        for c in range(3):
            lo[c] = min(lo[c], vertex.position[c])
            hi[c] = max(hi[c], vertex.position[c])
    return (lo[0], lo[1], lo[2]), (hi[0], hi[1], hi[2])


def encode_mesh(mesh: Mesh) -> bytes:
    """Encode a Mesh as a ZMS file."""
    vertices = mesh.vertices
    if len(vertices) > MAX_INDEXED_VERTICES + 1:
        raise UnsupportedFeatureError(
            f"Mesh '{mesh.name}' has {len(vertices)} vertices; ZMS indices are 16-bit"
        )

    has_uv2 = any(v.uv2 is not None for v in vertices)
    skinned = any(v.bone_weights is not None or v.bone_indices is not None for v in vertices)
    if has_uv2 and not mesh.has_uv2:
        raise InvalidMeshError(f"Mesh '{mesh.name}': uv2 present on only some vertices")
    if skinned and not mesh.is_skinned:
        raise InvalidMeshError(f"Mesh '{mesh.name}': skin data present on only some vertices")

    flags = VF_REQUIRED
    if skinned:
        flags |= VF_BONE_WEIGHT | VF_BONE_INDEX
    if has_uv2:
        flags |= VF_UV2

    bounds = mesh.bounding_box or mesh_bounds(mesh)
    out = bytearray(_identifier(AssetKind.MESH, mesh.version))
    out += MESH_HEADER.pack(
        flags, *bounds[0], *bounds[1], len(vertices), len(mesh.triangles)
    )

    layout = _vertex_layout(flags)
    for vertex in vertices:
        values: List[float] = [*vertex.position, *vertex.normal]
        if skinned:
            values.extend(vertex.bone_weights)  # type: ignore[arg-type]
            values.extend(vertex.bone_indices)  # type: ignore[arg-type]
        values.extend(vertex.uv1)
        if has_uv2:
            values.extend(vertex.uv2)  # type: ignore[arg-type]
        out += layout.pack(*values)

    for index, triangle in enumerate(mesh.triangles):
        if max(triangle) >= len(vertices) or min(triangle) < 0:
            raise InvalidMeshError(
                f"Mesh '{mesh.name}': triangle {index} index out of range"
            )
        out += TRIANGLE.pack(*triangle)

    out += mesh.tail
    return bytes(out)


# ---------------------------------------------------------------------------
# Skeleton (ZMD)
# ---------------------------------------------------------------------------

def _read_bone(reader: _Reader, context: str) -> Bone:
    (parent,) = reader.unpack(BONE_PARENT, context)
    name = reader.string(context)
    tx, ty, tz, qw, qx, qy, qz, scale = reader.unpack(BONE_TRANSFORM, context)
    return Bone(
        name=name,
        parent=None if parent < 0 else parent,
        translation=(tx, ty, tz),
        rotation=(qx, qy, qz, qw),
        scale=scale,
    )


def _pack_bone(bone: Bone) -> bytes:
    qx, qy, qz, qw = bone.rotation
    return (
        BONE_PARENT.pack(-1 if bone.parent is None else bone.parent)
        + _pack_string(bone.name)
        + BONE_TRANSFORM.pack(*bone.translation, qw, qx, qy, qz, bone.scale)
    )


def check_skeleton(skeleton: Skeleton) -> None:
    """Raise InvalidSkeletonError unless every parent precedes its child."""
    for index, bone in enumerate(skeleton.bones):
        if bone.parent is not None and not 0 <= bone.parent < index:
            raise InvalidSkeletonError(
                f"ZMD '{skeleton.name}': bone {index} ({bone.name!r}) has parent "
                f"{bone.parent}; parents must precede their children"
            )
    for index, dummy in enumerate(skeleton.dummies):
        if dummy.parent is not None and not 0 <= dummy.parent < len(skeleton.bones):
            raise InvalidSkeletonError(
                f"ZMD '{skeleton.name}': dummy {index} ({dummy.name!r}) has parent "
                f"{dummy.parent} outside bone range"
            )


def decode_skeleton(data: bytes, name: str = "skeleton") -> Skeleton:
    """Decode a ZMD file."""
    reader = _Reader(data, f"ZMD '{name}'")
    version = _expect_identifier(reader, AssetKind.SKELETON, (3,))
    num_bones, num_dummies = reader.unpack(SKELETON_HEADER, "header")

    # Each record is at least parent + empty name + transform.
    min_record = BONE_PARENT.size + 2 + BONE_TRANSFORM.size
    reader.need((num_bones + num_dummies) * min_record, f"{num_bones + num_dummies} bones")

    bones = [_read_bone(reader, f"bone {i}") for i in range(num_bones)]
    dummies = [_read_bone(reader, f"dummy {i}") for i in range(num_dummies)]

    skeleton = Skeleton(
        name=name, bones=bones, dummies=dummies, version=version, tail=reader.tail()
    )
    check_skeleton(skeleton)
    return skeleton


def encode_skeleton(skeleton: Skeleton) -> bytes:
    """Encode a Skeleton as a ZMD file."""
    check_skeleton(skeleton)
    out = bytearray(_identifier(AssetKind.SKELETON, skeleton.version))
    out += SKELETON_HEADER.pack(len(skeleton.bones), len(skeleton.dummies))
    for bone in skeleton.bones:
        out += _pack_bone(bone)
    for dummy in skeleton.dummies:
        out += _pack_bone(dummy)
    out += skeleton.tail
    return bytes(out)


# ---------------------------------------------------------------------------
# Animation (ZMO)
# ---------------------------------------------------------------------------

def check_channel_times(channel: Channel, context: str) -> None:
    previous: Optional[float] = None
    for index, key in enumerate(channel.keyframes):
        if not math.isfinite(key.time):
            raise InvalidAnimationError(f"{context}: keyframe {index} time is not finite")
        if previous is not None and key.time <= previous:
            raise InvalidAnimationError(
                f"{context}: keyframe times must strictly increase "
                f"({previous} then {key.time} at keyframe {index})"
            )
        previous = key.time


def decode_animation(data: bytes, name: str = "animation") -> Animation:
    """Decode a ZMO file. The stored animation name wins over *name*."""
    reader = _Reader(data, f"ZMO '{name}'")
    version = _expect_identifier(reader, AssetKind.ANIMATION, (3,))
    fps, num_channels = reader.unpack(ANIMATION_HEADER, "header")
    stored_name = reader.string("name")

    reader.need(num_channels * CHANNEL_HEADER.size, f"{num_channels} channels")
    channels: List[Channel] = []
    for channel_index in range(num_channels):
        context = f"ZMO '{name}' channel {channel_index}"
        bone, mode, num_keys = reader.unpack(CHANNEL_HEADER, f"channel {channel_index}")
        try:
            interpolation = Interpolation(mode)
        except ValueError:
            raise InvalidAnimationError(f"{context}: unknown interpolation mode {mode}") from None

        block = reader.take(num_keys * KEYFRAME.size, f"channel {channel_index} keyframes")
        keyframes = [
            Keyframe(time=t, translation=(tx, ty, tz), rotation=(qx, qy, qz, qw), scale=s)
            for t, tx, ty, tz, qw, qx, qy, qz, s in KEYFRAME.iter_unpack(block)
        ]
        channel = Channel(bone=bone, interpolation=interpolation, keyframes=keyframes)
        check_channel_times(channel, context)
        channels.append(channel)

    return Animation(
        name=stored_name,
        fps=fps,
        channels=channels,
        version=version,
        tail=reader.tail(),
    )


def encode_animation(animation: Animation) -> bytes:
    """Encode an Animation as a ZMO file."""
    out = bytearray(_identifier(AssetKind.ANIMATION, animation.version))
    out += ANIMATION_HEADER.pack(animation.fps, len(animation.channels))
    out += _pack_string(animation.name)
    for channel_index, channel in enumerate(animation.channels):
        check_channel_times(channel, f"Animation '{animation.name}' channel {channel_index}")
        out += CHANNEL_HEADER.pack(channel.bone, int(channel.interpolation), len(channel.keyframes))
        for key in channel.keyframes:
            qx, qy, qz, qw = key.rotation
            out += KEYFRAME.pack(key.time, *key.translation, qw, qx, qy, qz, key.scale)
    out += animation.tail
    return bytes(out)


# ---------------------------------------------------------------------------
# Object list (ZOL)
# ---------------------------------------------------------------------------

@dataclass
class AnimationRef:
    """An animation file named by an object list and the skeleton it drives."""

    file: str
    skeleton: int = 0


@dataclass
class ObjectList:
    """File-level view of a Scene: pools are referenced by name, not loaded."""

    mesh_names: List[str] = field(default_factory=list)
    skeleton_names: List[str] = field(default_factory=list)
    animations: List[AnimationRef] = field(default_factory=list)
    materials: List[Material] = field(default_factory=list)
    instances: List[ObjectInstance] = field(default_factory=list)
    lightmap_image: Optional[str] = None
    atlas_regions: List[AtlasRegion] = field(default_factory=list)
    version: int = OBJECT_LIST_VERSION
    tail: bytes = b""


def _read_string_pool(reader: _Reader, context: str) -> List[str]:
    (count,) = struct.unpack("<I", reader.take(4, context))
    reader.need(count * 2, context)
    return [reader.string(f"{context} {i}") for i in range(count)]


def _pack_string_pool(values: Sequence[str]) -> bytes:
    return struct.pack("<I", len(values)) + b"".join(_pack_string(v) for v in values)


def check_object_list(objects: ObjectList) -> None:
    num_instances = len(objects.instances)
    if objects.animations and objects.version < OBJECT_LIST_ANIMATIONS_SINCE:
        raise FormatError(
            f"ZOL version {objects.version} cannot hold animations; "
            f"use version {OBJECT_LIST_ANIMATIONS_SINCE} or later"
        )
    for index, ref in enumerate(objects.animations):
        if not 0 <= ref.skeleton < len(objects.skeleton_names):
            raise FormatError(f"ZOL animation {index} ({ref.file!r}): skeleton {ref.skeleton} out of range")
    for index, instance in enumerate(objects.instances):
        context = f"ZOL instance {index} ({instance.name!r})"
        if not 0 <= instance.mesh < len(objects.mesh_names):
            raise FormatError(f"{context}: mesh {instance.mesh} out of range")
        if not 0 <= instance.material < len(objects.materials):
            raise FormatError(f"{context}: material {instance.material} out of range")
        if instance.skeleton is not None and not 0 <= instance.skeleton < len(objects.skeleton_names):
            raise FormatError(f"{context}: skeleton {instance.skeleton} out of range")
        if instance.atlas_region is not None and not 0 <= instance.atlas_region < len(objects.atlas_regions):
            raise FormatError(f"{context}: atlas region {instance.atlas_region} out of range")
    for index, region in enumerate(objects.atlas_regions):
        if not 0 <= region.instance < num_instances:
            raise FormatError(f"ZOL atlas region {index}: instance {region.instance} out of range")


def decode_object_list(data: bytes) -> ObjectList:
    """Decode a ZOL file."""
    reader = _Reader(data, "ZOL")
    version = _expect_identifier(reader, AssetKind.OBJECT_LIST, (1, 2))

    mesh_names = _read_string_pool(reader, "mesh names")
    skeleton_names = _read_string_pool(reader, "skeleton names")

    animations: List[AnimationRef] = []
    if version >= OBJECT_LIST_ANIMATIONS_SINCE:
        (num_animations,) = struct.unpack("<I", reader.take(4, "animation count"))
        reader.need(num_animations * (2 + ANIMATION_REF_RECORD.size), f"{num_animations} animations")
        for i in range(num_animations):
            file_name = reader.string(f"animation {i}")
            (skeleton,) = reader.unpack(ANIMATION_REF_RECORD, f"animation {i}")
            animations.append(AnimationRef(file=file_name, skeleton=skeleton))

    (num_materials,) = struct.unpack("<I", reader.take(4, "material count"))
    reader.need(num_materials * (2 + MATERIAL_RECORD.size), f"{num_materials} materials")
    materials: List[Material] = []
    for i in range(num_materials):
        texture = reader.string(f"material {i}")
        flags, alpha_ref, blend_mode = reader.unpack(MATERIAL_RECORD, f"material {i}")
        materials.append(Material(
            texture=texture,
            alpha_enabled=bool(flags & 1),
            two_sided=bool(flags & 2),
            alpha_ref=alpha_ref,
            blend_mode=blend_mode,
        ))

    (num_instances,) = struct.unpack("<I", reader.take(4, "instance count"))
    reader.need(num_instances * (2 + INSTANCE_RECORD.size), f"{num_instances} instances")
    instances: List[ObjectInstance] = []
    for i in range(num_instances):
        name = reader.string(f"instance {i}")
        (
            mesh, skeleton, material,
            px, py, pz, qw, qx, qy, qz, sx, sy, sz,
            flags, region,
        ) = reader.unpack(INSTANCE_RECORD, f"instance {i}")
        instances.append(ObjectInstance(
            name=name,
            mesh=mesh,
            material=material,
            skeleton=None if skeleton < 0 else skeleton,
            position=(px, py, pz),
            rotation=(qx, qy, qz, qw),
            scale=(sx, sy, sz),
            lightmapped=bool(flags & 1),
            atlas_region=None if region < 0 else region,
        ))

    lightmap_image = reader.string("lightmap image") or None
    (num_regions,) = struct.unpack("<I", reader.take(4, "region count"))
    block = reader.take(num_regions * REGION_RECORD.size, f"{num_regions} atlas regions")
    regions = [
        AtlasRegion(instance=inst, x=x, y=y, width=w, height=h, padding=pad)
        for inst, x, y, w, h, pad, _reserved in REGION_RECORD.iter_unpack(block)
    ]

    objects = ObjectList(
        mesh_names=mesh_names,
        skeleton_names=skeleton_names,
        animations=animations,
        materials=materials,
        instances=instances,
        lightmap_image=lightmap_image,
        atlas_regions=regions,
        version=version,
        tail=reader.tail(),
    )
    check_object_list(objects)
    return objects


def encode_object_list(objects: ObjectList) -> bytes:
    """Encode an ObjectList as a ZOL file."""
    check_object_list(objects)
    out = bytearray(_identifier(AssetKind.OBJECT_LIST, objects.version))
    out += _pack_string_pool(objects.mesh_names)
    out += _pack_string_pool(objects.skeleton_names)
    if objects.version >= OBJECT_LIST_ANIMATIONS_SINCE:
        out += struct.pack("<I", len(objects.animations))
        for ref in objects.animations:
            out += _pack_string(ref.file)
            out += ANIMATION_REF_RECORD.pack(ref.skeleton)

    out += struct.pack("<I", len(objects.materials))
    for material in objects.materials:
        flags = (1 if material.alpha_enabled else 0) | (2 if material.two_sided else 0)
        out += _pack_string(material.texture)
        out += MATERIAL_RECORD.pack(flags, material.alpha_ref, material.blend_mode)

    out += struct.pack("<I", len(objects.instances))
    for instance in objects.instances:
        qx, qy, qz, qw = instance.rotation
        out += _pack_string(instance.name)
        out += INSTANCE_RECORD.pack(
            instance.mesh,
            -1 if instance.skeleton is None else instance.skeleton,
            instance.material,
            *instance.position,
            qw, qx, qy, qz,
            *instance.scale,
            1 if instance.lightmapped else 0,
            -1 if instance.atlas_region is None else instance.atlas_region,
        )

    out += _pack_string(objects.lightmap_image or "")
    out += struct.pack("<I", len(objects.atlas_regions))
    for region in objects.atlas_regions:
        out += REGION_RECORD.pack(
            region.instance, region.x, region.y, region.width, region.height, region.padding, 0
        )
    out += objects.tail
    return bytes(out)


def object_list_from_scene(scene: Scene) -> ObjectList:
    version = scene.version
    if scene.animations:
        version = max(version, OBJECT_LIST_ANIMATIONS_SINCE)
    return ObjectList(
        mesh_names=[mesh.name for mesh in scene.meshes],
        skeleton_names=[skeleton.name for skeleton in scene.skeletons],
        animations=[AnimationRef(file=a.name, skeleton=a.skeleton) for a in scene.animations],
        materials=list(scene.materials),
        instances=list(scene.instances),
        lightmap_image=scene.lightmap_image,
        atlas_regions=list(scene.atlas_regions),
        version=version,
        tail=scene.tail,
    )


def scene_from_object_list(
    objects: ObjectList,
    meshes: Sequence[Mesh],
    skeletons: Sequence[Skeleton] = (),
    animations: Sequence[Animation] = (),
    name: str = "scene",
) -> Scene:
    """Assemble a Scene from a decoded object list and its loaded pools.

    The first ``len(objects.animations)`` entries of *animations* are the files
    the object list names and are bound to the skeletons it records; any
    further animations keep their own skeleton index.
    """
    if len(animations) < len(objects.animations):
        raise FormatError(
            f"Object list names {len(objects.animations)} animations, got {len(animations)}"
        )
    animations = [
        replace(animation, skeleton=objects.animations[i].skeleton) if i < len(objects.animations) else animation
        for i, animation in enumerate(animations)
    ]
    if len(meshes) != len(objects.mesh_names):
        raise FormatError(
            f"Object list names {len(objects.mesh_names)} meshes, got {len(meshes)}"
        )
    if len(skeletons) != len(objects.skeleton_names):
        raise FormatError(
            f"Object list names {len(objects.skeleton_names)} skeletons, got {len(skeletons)}"
        )
    scene = Scene(
        name=name,
        meshes=list(meshes),
        skeletons=list(skeletons),
        materials=list(objects.materials),
        animations=list(animations),
        instances=list(objects.instances),
        lightmap_image=objects.lightmap_image,
        atlas_regions=list(objects.atlas_regions),
        version=objects.version,
        tail=objects.tail,
    )
    validate_scene(scene)
    return scene


# ---------------------------------------------------------------------------
# Cross-file checks
# ---------------------------------------------------------------------------

def validate_scene(scene: Scene) -> None:
    """Check every index in *scene* against the pools it refers to."""
    for skeleton in scene.skeletons:
        check_skeleton(skeleton)

    for index, instance in enumerate(scene.instances):
        context = f"Instance {index} ({instance.name!r})"
        if not 0 <= instance.mesh < len(scene.meshes):
            raise FormatError(f"{context}: mesh {instance.mesh} out of range")
        if not 0 <= instance.material < len(scene.materials):
            raise FormatError(f"{context}: material {instance.material} out of range")
        if instance.atlas_region is not None and not 0 <= instance.atlas_region < len(scene.atlas_regions):
            raise FormatError(f"{context}: atlas region {instance.atlas_region} out of range")

        mesh = scene.meshes[instance.mesh]
        if instance.skeleton is None:
            continue
        if not 0 <= instance.skeleton < len(scene.skeletons):
            raise FormatError(f"{context}: skeleton {instance.skeleton} out of range")
        num_bones = len(scene.skeletons[instance.skeleton].bones)
        for vertex_index, vertex in enumerate(mesh.vertices):
            if vertex.bone_indices is None or vertex.bone_weights is None:
                continue
            for bone, weight in zip(vertex.bone_indices, vertex.bone_weights):
                if weight > 0.0 and bone >= num_bones:
                    raise InvalidMeshError(
                        f"Mesh '{mesh.name}' vertex {vertex_index} uses bone {bone}; "
                        f"skeleton '{scene.skeletons[instance.skeleton].name}' has {num_bones}"
                    )

    for index, animation in enumerate(scene.animations):
        if not scene.skeletons:
            raise InvalidAnimationError(f"Animation '{animation.name}' has no skeleton to drive")
        if not 0 <= animation.skeleton < len(scene.skeletons):
            raise InvalidAnimationError(
                f"Animation '{animation.name}': skeleton {animation.skeleton} out of range"
            )
        num_bones = len(scene.skeletons[animation.skeleton].bones)
        for channel_index, channel in enumerate(animation.channels):
            if channel.bone >= num_bones:
                raise InvalidAnimationError(
                    f"Animation '{animation.name}' channel {channel_index} targets bone "
                    f"{channel.bone}; skeleton has {num_bones}"
                )


# ---------------------------------------------------------------------------
# Dispatch on header tag
# ---------------------------------------------------------------------------

_DECODERS: Dict[AssetKind, Callable[[bytes], object]] = {
    AssetKind.MESH: decode_mesh,
    AssetKind.SKELETON: decode_skeleton,
    AssetKind.ANIMATION: decode_animation,
    AssetKind.OBJECT_LIST: decode_object_list,
}

_ENCODERS: Dict[type, Callable] = {
    Mesh: encode_mesh,
    Skeleton: encode_skeleton,
    Animation: encode_animation,
    ObjectList: encode_object_list,
}


def decode_asset(data: bytes) -> object:
    """Decode any supported file, selecting the decoder from its header tag."""
    kind, _version = read_identifier(data)
    return _DECODERS[kind](data)


def encode_asset(value: object) -> bytes:
    encoder = _ENCODERS.get(type(value))
    if encoder is None:
        raise TypeError(f"No encoder for {type(value).__name__}")
    return encoder(value)
