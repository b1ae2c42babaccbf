"""
gltf_bridge.py
==============

Maps a ROSE Scene to and from glTF 2.0.

The source data is left-handed Z-up in centimetres. glTF is right-handed Y-up
in metres. Points are swizzled (x, y, z) -> (x, z, y) and multiplied by
``BridgeOptions.unit_scale``; the swizzle is a reflection, so rotation vector
parts are swizzled and negated and triangle winding is reversed. Every
conversion here is its own inverse.

Fields glTF has no slot for (file versions, opaque tails, stored bounding
boxes, ROSE interpolation modes, lightmap regions) ride along in ``extras``
so export followed by import reproduces the Scene.
"""

from __future__ import annotations

import base64
import bisect
import json
import logging
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import unquote

from .codec import OBJECT_LIST_VERSION, check_channel_times, normalize_weights, validate_scene
from .errors import (
    FormatError,
    InvalidAnimationError,
    InvalidMeshError,
    InvalidSkeletonError,
    TruncatedError,
    UnknownFormatError,
    UnsupportedFeatureError,
)
from .mathutil import (
    column_major_values_to_matrix4,
    compose_matrix4,
    decompose_matrix4,
    identity_matrix4,
    matrix4_inverse_affine,
    matrix4_multiply,
    matrix4_to_column_major_values,
    quat_slerp,
    vector_lerp,
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
    Quat,
    Scene,
    Skeleton,
    Vec3,
    Vertex,
)

GLTF_MAGIC = 0x46546C67  # "glTF"
JSON_CHUNK_TYPE = 0x4E4F534A  # "JSON"
BIN_CHUNK_TYPE = 0x004E4942  # "BIN\0"

ARRAY_BUFFER = 34962
ELEMENT_ARRAY_BUFFER = 34963

BYTE = 5120
UNSIGNED_BYTE = 5121
SHORT = 5122
UNSIGNED_SHORT = 5123
UNSIGNED_INT = 5125
FLOAT = 5126

TRIANGLES = 4

_COMPONENT_FORMATS = {
    BYTE: "b",
    UNSIGNED_BYTE: "B",
    SHORT: "h",
    UNSIGNED_SHORT: "H",
    UNSIGNED_INT: "I",
    FLOAT: "f",
}
_NORMALIZED_DIVISORS = {
    BYTE: 127.0,
    UNSIGNED_BYTE: 255.0,
    SHORT: 32767.0,
    UNSIGNED_SHORT: 65535.0,
}
_TYPE_WIDTHS = {"SCALAR": 1, "VEC2": 2, "VEC3": 3, "VEC4": 4, "MAT4": 16}
_REGION_KEYS = ("instance", "x", "y", "width", "height", "padding")

_UNIFORM_SCALE_TOLERANCE = 1e-5


@dataclass
class BridgeOptions:
    unit_scale: float = 0.01
    # Used when an imported animation carries no frame rate of its own.
    animation_fps: int = 30
    embed_buffers: bool = False


@dataclass
class InterchangeDocument:
    """A glTF JSON document plus its single binary buffer."""

    document: Dict[str, Any]
    buffer: bytes = b""
    warnings: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Basis change
# ---------------------------------------------------------------------------

def _to_gltf_point(v: Sequence[float], unit_scale: float) -> Vec3:
    return (v[0] * unit_scale, v[2] * unit_scale, v[1] * unit_scale)


def _from_gltf_point(v: Sequence[float], unit_scale: float) -> Vec3:
    return (v[0] / unit_scale, v[2] / unit_scale, v[1] / unit_scale)


def _swap_yz(v: Sequence[float]) -> Vec3:
    return (v[0], v[2], v[1])


def _convert_rotation(q: Sequence[float]) -> Quat:
    x, y, z, w = q
    return (-x, -z, -y, w)


def _encode_tail(tail: bytes) -> str:
    return base64.b64encode(tail).decode("ascii")


def _decode_tail(value: Optional[str]) -> bytes:
    return base64.b64decode(value) if value else b""


def _warn(warnings: List[str], message: str, *args: object) -> None:
    text = message % args if args else message
    logging.warning("%s", text)
    warnings.append(text)


def _export_joints(
    indices: Sequence[int],
    weights: Sequence[float],
    limit: Optional[int],
) -> Tuple[int, ...]:
    """Point unused influences outside the skin at joint 0."""
    if limit is None:
        return tuple(indices)
    return tuple(
        0 if weight == 0.0 and index >= limit else index
        for index, weight in zip(indices, weights)
    )


def _is_uniform(scale: Sequence[float]) -> bool:
    limit = _UNIFORM_SCALE_TOLERANCE * max(1.0, abs(scale[0]))
    return abs(scale[0] - scale[1]) <= limit and abs(scale[0] - scale[2]) <= limit


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

def _export_material(
    material: Material,
    images: List[Dict[str, object]],
    textures: List[Dict[str, object]],
    image_index_by_uri: Dict[str, int],
) -> Dict[str, object]:
    pbr: Dict[str, object] = {"metallicFactor": 0.0, "roughnessFactor": 1.0}
    entry: Dict[str, object] = {
        "name": material.texture or "untextured",
        "pbrMetallicRoughness": pbr,
        "doubleSided": material.two_sided,
        "extras": {
            "texture": material.texture,
            "alpha_enabled": material.alpha_enabled,
            "alpha_ref": material.alpha_ref,
            "blend_mode": material.blend_mode,
        },
    }
    if material.alpha_enabled:
        if material.blend_mode == 0:
            entry["alphaMode"] = "MASK"
            entry["alphaCutoff"] = material.alpha_ref / 255.0
        else:
            entry["alphaMode"] = "BLEND"

    if material.texture:
        image_index = image_index_by_uri.get(material.texture)
        if image_index is None:
            image_index = len(images)
            images.append({"uri": material.texture.replace("\\", "/")})
            image_index_by_uri[material.texture] = image_index
        pbr["baseColorTexture"] = {"index": len(textures)}
        textures.append({"source": image_index})
    return entry


def export_scene(scene: Scene, options: Optional[BridgeOptions] = None) -> InterchangeDocument:
    """Build a glTF document (and its binary buffer) describing *scene*."""
    options = options or BridgeOptions()
    unit = options.unit_scale
    warnings: List[str] = []
    validate_scene(scene)

    binary_buffer = bytearray()
    buffer_views: List[Dict[str, object]] = []
    accessors: List[Dict[str, object]] = []

    def append_binary_buffer_view(
        payload: bytes,
        target: Optional[int] = None,
    ) -> int:
        byte_offset = len(binary_buffer)
        binary_buffer.extend(payload)
        payload_padding = (4 - len(binary_buffer) % 4) % 4
        if payload_padding:
            binary_buffer.extend(b"\x00" * payload_padding)

        view: Dict[str, object] = {
            "buffer": 0,
            "byteOffset": byte_offset,
            "byteLength": len(payload),
        }
        if target is not None:
            view["target"] = target

        buffer_view_index = len(buffer_views)
        buffer_views.append(view)
        return buffer_view_index

    def append_accessor(
        payload: bytes,
        component_type: int,
        count: int,
        accessor_type: str,
        target: Optional[int] = None,
        minimum: Optional[List[float]] = None,
        maximum: Optional[List[float]] = None,
    ) -> int:
        accessor: Dict[str, object] = {
            "bufferView": append_binary_buffer_view(payload, target),
            "componentType": component_type,
            "count": count,
            "type": accessor_type,
        }
        if minimum is not None and maximum is not None:
            accessor["min"] = minimum
            accessor["max"] = maximum
        accessors.append(accessor)
        return len(accessors) - 1

    # Materials.
    images: List[Dict[str, object]] = []
    textures: List[Dict[str, object]] = []
    image_index_by_uri: Dict[str, int] = {}
    gltf_materials = [
        _export_material(material, images, textures, image_index_by_uri)
        for material in scene.materials
    ]

    # Smallest skin each skinned mesh is bound to; JOINTS_0 must stay inside it.
    joint_limit: Dict[int, int] = {}
    for instance in scene.instances:
        if instance.skeleton is not None:
            count = len(scene.skeletons[instance.skeleton].bones)
            joint_limit[instance.mesh] = min(joint_limit.get(instance.mesh, count), count)

    # Vertex data, one accessor set per pool mesh.
    mesh_meta: List[Dict[str, object]] = []
    primitive_base: Dict[int, Dict[str, object]] = {}
    for mesh_index, mesh in enumerate(scene.meshes):
        meta: Dict[str, object] = {"name": mesh.name, "version": mesh.version}
        if mesh.tail:
            meta["tail"] = _encode_tail(mesh.tail)
        if mesh.bounding_box is not None:
            meta["bounding_box"] = [list(mesh.bounding_box[0]), list(mesh.bounding_box[1])]
        mesh_meta.append(meta)

        if not mesh.vertices or not mesh.triangles:
            if mesh.vertices:
                _warn(warnings, "Mesh '%s' has vertices but no triangles; vertices not exported", mesh.name)
            continue
        if not mesh.has_uv2 and any(v.uv2 is not None for v in mesh.vertices):
            _warn(warnings, "Mesh '%s': uv2 missing on some vertices; TEXCOORD_1 not exported", mesh.name)
        if not mesh.is_skinned and any(v.bone_weights is not None for v in mesh.vertices):
            _warn(warnings, "Mesh '%s': skin data missing on some vertices; skinning not exported", mesh.name)

        num_verts = len(mesh.vertices)
        positions = [_to_gltf_point(v.position, unit) for v in mesh.vertices]
        min_pos = [min(p[c] for p in positions) for c in range(3)]
        max_pos = [max(p[c] for p in positions) for c in range(3)]

        attributes: Dict[str, int] = {
            "POSITION": append_accessor(
                b"".join(struct.pack("<3f", *p) for p in positions),
                FLOAT, num_verts, "VEC3", ARRAY_BUFFER, min_pos, max_pos,
            ),
            "NORMAL": append_accessor(
                b"".join(struct.pack("<3f", *_swap_yz(v.normal)) for v in mesh.vertices),
                FLOAT, num_verts, "VEC3", ARRAY_BUFFER,
            ),
            "TEXCOORD_0": append_accessor(
                b"".join(struct.pack("<2f", *v.uv1) for v in mesh.vertices),
                FLOAT, num_verts, "VEC2", ARRAY_BUFFER,
            ),
        }
        if mesh.has_uv2:
            attributes["TEXCOORD_1"] = append_accessor(
                b"".join(struct.pack("<2f", *v.uv2) for v in mesh.vertices),  # type: ignore[misc]
                FLOAT, num_verts, "VEC2", ARRAY_BUFFER,
            )
        if mesh.is_skinned:
            limit = joint_limit.get(mesh_index)
            attributes["JOINTS_0"] = append_accessor(
                b"".join(
                    struct.pack("<4H", *_export_joints(v.bone_indices, v.bone_weights, limit))  # type: ignore[arg-type]
                    for v in mesh.vertices
                ),
                UNSIGNED_SHORT, num_verts, "VEC4", ARRAY_BUFFER,
            )
            attributes["WEIGHTS_0"] = append_accessor(
                b"".join(struct.pack("<4f", *v.bone_weights) for v in mesh.vertices),  # type: ignore[misc]
                FLOAT, num_verts, "VEC4", ARRAY_BUFFER,
            )

        # Axis swizzle flips handedness, so we reverse winding for correct front faces.
        flat_indices = [i for a, b, c in mesh.triangles for i in (a, c, b)]
        if num_verts > 65535:
            index_data = struct.pack(f"<{len(flat_indices)}I", *flat_indices)
            index_type = UNSIGNED_INT
        else:
            index_data = struct.pack(f"<{len(flat_indices)}H", *flat_indices)
            index_type = UNSIGNED_SHORT
        indices = append_accessor(
            index_data, index_type, len(flat_indices), "SCALAR", ELEMENT_ARRAY_BUFFER,
        )
        primitive_base[mesh_index] = {"attributes": attributes, "indices": indices, "mode": TRIANGLES}

    # glTF binds materials on primitives, so one glTF mesh per (mesh, material) in use.
    gltf_meshes: List[Dict[str, object]] = []
    gltf_mesh_by_key: Dict[Tuple[int, Optional[int]], int] = {}

    def gltf_mesh_for(mesh_index: int, material_index: Optional[int]) -> Optional[int]:
        key = (mesh_index, material_index)
        if key in gltf_mesh_by_key:
            return gltf_mesh_by_key[key]
        base = primitive_base.get(mesh_index)
        if base is None:
            return None
        primitive: Dict[str, object] = {
            "attributes": dict(base["attributes"]),  # type: ignore[arg-type]
            "indices": base["indices"],
            "mode": TRIANGLES,
        }
        if material_index is not None:
            primitive["material"] = material_index
        gltf_mesh_by_key[key] = len(gltf_meshes)
        gltf_meshes.append({
            "name": scene.meshes[mesh_index].name,
            "primitives": [primitive],
            "extras": {"rose_mesh": mesh_index},
        })
        return gltf_mesh_by_key[key]

    first_material: Dict[int, int] = {}
    for instance in scene.instances:
        first_material.setdefault(instance.mesh, instance.material)
    for mesh_index in range(len(scene.meshes)):
        gltf_mesh_for(mesh_index, first_material.get(mesh_index))

    # Instance nodes come first so node index == instance index.
    nodes: List[Dict[str, object]] = []
    scene_nodes: List[int] = []
    for instance_index, instance in enumerate(scene.instances):
        extras: Dict[str, object] = {
            "lightmapped": instance.lightmapped,
            "rose_mesh": instance.mesh,
            "material": instance.material,
        }
        if instance.atlas_region is not None:
            extras["atlas_region"] = instance.atlas_region
        if instance.skeleton is not None:
            extras["skeleton"] = instance.skeleton
        node: Dict[str, object] = {
            "name": instance.name,
            "translation": list(_to_gltf_point(instance.position, unit)),
            "rotation": list(_convert_rotation(instance.rotation)),
            "scale": list(_swap_yz(instance.scale)),
            "extras": extras,
        }
        gltf_mesh = gltf_mesh_for(instance.mesh, instance.material)
        if gltf_mesh is not None:
            node["mesh"] = gltf_mesh
        nodes.append(node)
        scene_nodes.append(instance_index)

    # Skeletons: bone nodes, dummy nodes, one skin each.
    skins: List[Dict[str, object]] = []
    skeleton_meta: List[Dict[str, object]] = []
    bone_node_offsets: List[int] = []
    skin_for_skeleton: Dict[int, int] = {}
    for skeleton_index, skeleton in enumerate(scene.skeletons):
        bone_node_offset = len(nodes)
        bone_node_offsets.append(bone_node_offset)
        root_nodes: List[int] = []
        global_matrices = []

        for bone_index, bone in enumerate(skeleton.bones):
            translation = _to_gltf_point(bone.translation, unit)
            rotation = _convert_rotation(bone.rotation)
            scale = (bone.scale, bone.scale, bone.scale)
            nodes.append({
                "name": bone.name,
                "translation": list(translation),
                "rotation": list(rotation),
                "scale": list(scale),
            })
            local = compose_matrix4(translation, rotation, scale)
            if bone.parent is None:
                root_nodes.append(bone_node_offset + bone_index)
                global_matrices.append(local)
            else:
                children = nodes[bone_node_offset + bone.parent].setdefault("children", [])
                children.append(bone_node_offset + bone_index)  # type: ignore[union-attr]
                global_matrices.append(matrix4_multiply(global_matrices[bone.parent], local))

        dummy_nodes: List[int] = []
        for dummy in skeleton.dummies:
            dummy_node = len(nodes)
            nodes.append({
                "name": dummy.name,
                "translation": list(_to_gltf_point(dummy.translation, unit)),
                "rotation": list(_convert_rotation(dummy.rotation)),
                "scale": [dummy.scale, dummy.scale, dummy.scale],
                "extras": {"dummy": True},
            })
            if dummy.parent is None:
                root_nodes.append(dummy_node)
            else:
                children = nodes[bone_node_offset + dummy.parent].setdefault("children", [])
                children.append(dummy_node)  # type: ignore[union-attr]
            dummy_nodes.append(dummy_node)

        scene_nodes.extend(root_nodes)
        meta = {"name": skeleton.name, "version": skeleton.version, "dummies": dummy_nodes}
        if skeleton.tail:
            meta["tail"] = _encode_tail(skeleton.tail)

        if skeleton.bones:
            inverse_bind_values: List[float] = []
            for bone_index, bind_global in enumerate(global_matrices):
                try:
                    inverse_bind = matrix4_inverse_affine(bind_global)
                except ValueError:
                    _warn(
                        warnings,
                        "Skeleton '%s' bone %d has a singular bind pose; using identity inverse bind",
                        skeleton.name, bone_index,
                    )
                    inverse_bind = identity_matrix4()
                inverse_bind_values.extend(matrix4_to_column_major_values(inverse_bind))

            skin: Dict[str, object] = {
                "name": skeleton.name,
                "joints": list(range(bone_node_offset, bone_node_offset + len(skeleton.bones))),
                "inverseBindMatrices": append_accessor(
                    struct.pack(f"<{len(inverse_bind_values)}f", *inverse_bind_values),
                    FLOAT, len(skeleton.bones), "MAT4",
                ),
            }
            bone_roots = [n for n in root_nodes if n < bone_node_offset + len(skeleton.bones)]
            if len(bone_roots) == 1:
                skin["skeleton"] = bone_roots[0]
            meta["skin"] = len(skins)
            skin_for_skeleton[skeleton_index] = len(skins)
            skins.append(skin)
        skeleton_meta.append(meta)

    for instance_index, instance in enumerate(scene.instances):
        if instance.skeleton in skin_for_skeleton and "mesh" in nodes[instance_index]:
            nodes[instance_index]["skin"] = skin_for_skeleton[instance.skeleton]  # type: ignore[index]

    # Animations: one sampler per channel property, all sharing the channel's key times.
    gltf_animations: List[Dict[str, object]] = []
    animation_meta: List[Dict[str, object]] = []
    for animation in scene.animations:
        bone_node_offset = bone_node_offsets[animation.skeleton]
        samplers: List[Dict[str, object]] = []
        channels: List[Dict[str, object]] = []

        for channel_index, channel in enumerate(animation.channels):
            if not channel.keyframes:
                _warn(
                    warnings,
                    "Animation '%s' channel %d has no keyframes; skipped",
                    animation.name, channel_index,
                )
                continue

            times = [key.time for key in channel.keyframes]
            count = len(times)
            time_accessor = append_accessor(
                struct.pack(f"<{count}f", *times), FLOAT, count, "SCALAR",
                minimum=[times[0]], maximum=[times[-1]],
            )
            tracks = (
                ("translation", "VEC3", b"".join(
                    struct.pack("<3f", *_to_gltf_point(key.translation, unit))
                    for key in channel.keyframes
                )),
                ("rotation", "VEC4", b"".join(
                    struct.pack("<4f", *_convert_rotation(key.rotation))
                    for key in channel.keyframes
                )),
                ("scale", "VEC3", b"".join(
                    struct.pack("<3f", key.scale, key.scale, key.scale)
                    for key in channel.keyframes
                )),
            )
            interpolation = "STEP" if channel.interpolation == Interpolation.STEP else "LINEAR"
            for path, accessor_type, payload in tracks:
                output_accessor = append_accessor(payload, FLOAT, count, accessor_type)
                samplers.append({
                    "input": time_accessor,
                    "output": output_accessor,
                    "interpolation": interpolation,
                    "extras": {
                        "rose_channel": channel_index,
                        "rose_interpolation": channel.interpolation.name,
                    },
                })
                channels.append({
                    "sampler": len(samplers) - 1,
                    "target": {"node": bone_node_offset + channel.bone, "path": path},
                })

        meta = {
            "name": animation.name,
            "fps": animation.fps,
            "skeleton": animation.skeleton,
            "version": animation.version,
        }
        if animation.tail:
            meta["tail"] = _encode_tail(animation.tail)
        if channels:
            meta["gltf_animation"] = len(gltf_animations)
            gltf_animations.append({
                "name": animation.name,
                "samplers": samplers,
                "channels": channels,
                "extras": {"fps": animation.fps},
            })
        animation_meta.append(meta)

    rose_extras: Dict[str, object] = {
        "name": scene.name,
        "version": scene.version,
        "meshes": mesh_meta,
        "skeletons": skeleton_meta,
        "animations": animation_meta,
    }
    if scene.tail:
        rose_extras["tail"] = _encode_tail(scene.tail)
    if scene.lightmap_image is not None or scene.atlas_regions:
        rose_extras["lightmap"] = {
            "image": scene.lightmap_image,
            "regions": [
                {
                    "instance": region.instance,
                    "x": region.x,
                    "y": region.y,
                    "width": region.width,
                    "height": region.height,
                    "padding": region.padding,
                }
                for region in scene.atlas_regions
            ],
        }

    gltf: Dict[str, Any] = {
        "asset": {"version": "2.0", "generator": "rose-converter gltf_bridge.py"},
        "scene": 0,
        "scenes": [{"name": scene.name, "nodes": scene_nodes, "extras": {"rose": rose_extras}}],
        "nodes": nodes,
    }
    if binary_buffer:
        gltf["buffers"] = [{"byteLength": len(binary_buffer)}]
        gltf["bufferViews"] = buffer_views
        gltf["accessors"] = accessors
    if gltf_meshes:
        gltf["meshes"] = gltf_meshes
    if gltf_materials:
        gltf["materials"] = gltf_materials
    if textures:
        gltf["textures"] = textures
        gltf["images"] = images
    if skins:
        gltf["skins"] = skins
    if gltf_animations:
        gltf["animations"] = gltf_animations

    logging.debug(
        "Exported scene '%s': %d nodes, %d meshes, %d skins, %d animations, %d buffer bytes",
        scene.name, len(nodes), len(gltf_meshes), len(skins), len(gltf_animations), len(binary_buffer),
    )
    return InterchangeDocument(document=gltf, buffer=bytes(binary_buffer), warnings=warnings)


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------

def _sample_track(
    times: Sequence[float],
    values: Sequence[Tuple[float, ...]],
    mode: str,
    time: float,
    spherical: bool,
) -> Tuple[float, ...]:
    if time <= times[0]:
        return values[0]
    if time >= times[-1]:
        return values[-1]
    after = bisect.bisect_right(times, time)
    before = after - 1
    factor = (time - times[before]) / (times[after] - times[before])
    if mode == "STEP" or factor == 0.0:
        return values[before]
    if spherical:
        return quat_slerp(values[before], values[after], factor)  # type: ignore[arg-type]
    return vector_lerp(values[before], values[after], factor)


class _SceneImporter:
    def __init__(self, document: InterchangeDocument, options: BridgeOptions) -> None:
        self.gltf = document.document
        self.buffer = document.buffer
        self.unit = options.unit_scale
        self.default_fps = options.animation_fps
        self.warnings: List[str] = []

        scenes = self.gltf.get("scenes") or [{}]
        scene_index = self.gltf.get("scene", 0)
        self.root_scene = scenes[scene_index] if 0 <= scene_index < len(scenes) else {}
        self.rose: Dict[str, Any] = (self.root_scene.get("extras") or {}).get("rose") or {}

        self.nodes: List[Dict[str, Any]] = self.gltf.get("nodes", [])
        self.parent_of: Dict[int, int] = {}
        for node_index, node in enumerate(self.nodes):
            for child in node.get("children", []):
                self.parent_of[self.check_node(child, f"Node {node_index} child")] = node_index

        self.meshes: List[Mesh] = []
        self.mesh_slots: Dict[object, int] = {}
        self.decoded_primitives: set = set()
        self.skeletons: List[Skeleton] = []
        self.materials: List[Material] = []
        self.default_material: Optional[int] = None
        self.animations: List[Animation] = []
        self.instances: List[ObjectInstance] = []

        # glTF skin index -> skeleton index / joint slot -> bone index.
        self.skin_skeleton: Dict[int, int] = {}
        self.skin_slot_to_bone: Dict[int, List[int]] = {}
        # joint node -> (skeleton index, bone index)
        self.joint_bone: Dict[int, Tuple[int, int]] = {}
        self.dummy_nodes: set = set()

    # -- binary access -----------------------------------------------------

    def read_accessor(self, index: int) -> List[Tuple]:
        accessors = self.gltf.get("accessors", [])
        if not isinstance(index, int) or not 0 <= index < len(accessors):
            raise FormatError(f"Accessor {index} out of range")
        accessor = accessors[index]
        if "sparse" in accessor:
            raise UnsupportedFeatureError(f"Accessor {index} is sparse")

        component_type = accessor.get("componentType")
        component = _COMPONENT_FORMATS.get(component_type)
        width = _TYPE_WIDTHS.get(accessor.get("type"))
        if component is None or width is None:
            raise UnsupportedFeatureError(
                f"Accessor {index}: unsupported layout {component_type}/{accessor.get('type')}"
            )
        count = int(accessor.get("count", 0))
        if "bufferView" not in accessor:
            return [(0,) * width] * count

        views = self.gltf.get("bufferViews", [])
        view_index = accessor["bufferView"]
        if not isinstance(view_index, int) or not 0 <= view_index < len(views):
            raise FormatError(f"Accessor {index}: buffer view {view_index} out of range")
        view = views[view_index]
        if view.get("buffer", 0) != 0:
            raise UnsupportedFeatureError(f"Buffer view {view_index} references a second buffer")

        element = struct.Struct("<" + component * width)
        stride = view.get("byteStride") or element.size
        view_start = int(view.get("byteOffset", 0))
        view_end = view_start + int(view.get("byteLength", 0))
        start = view_start + int(accessor.get("byteOffset", 0))
        if view_end > len(self.buffer) or (count and start + stride * (count - 1) + element.size > view_end):
            raise TruncatedError(
                f"Accessor {index}: {count} x {element.size} bytes exceed buffer view {view_index}"
            )

        values = [element.unpack_from(self.buffer, start + i * stride) for i in range(count)]
        if accessor.get("normalized") and component_type in _NORMALIZED_DIVISORS:
            divisor = _NORMALIZED_DIVISORS[component_type]
            values = [tuple(max(c / divisor, -1.0) for c in value) for value in values]
        return values

    # -- nodes ---------------------------------------------------------------

    def node_trs(self, node: Dict[str, Any]) -> Tuple[Vec3, Quat, Vec3]:
        if "matrix" in node:
            return decompose_matrix4(column_major_values_to_matrix4(node["matrix"]))
        translation = tuple(float(c) for c in node.get("translation", (0.0, 0.0, 0.0)))
        rotation = tuple(float(c) for c in node.get("rotation", (0.0, 0.0, 0.0, 1.0)))
        scale = tuple(float(c) for c in node.get("scale", (1.0, 1.0, 1.0)))
        return translation, rotation, scale  # type: ignore[return-value]

    def node_local_matrix(self, node_index: int):
        node = self.nodes[node_index]
        if "matrix" in node:
            return column_major_values_to_matrix4(node["matrix"])
        return compose_matrix4(*self.node_trs(node))

    def node_world_trs(self, node_index: int) -> Tuple[Vec3, Quat, Vec3]:
        if node_index not in self.parent_of:
            return self.node_trs(self.nodes[node_index])
        matrix = self.node_local_matrix(node_index)
        parent = self.parent_of.get(node_index)
        steps = 0
        while parent is not None:
            steps += 1
            if steps > len(self.nodes):
                raise FormatError(f"Node {node_index} has a cyclic parent chain")
            matrix = matrix4_multiply(self.node_local_matrix(parent), matrix)
            parent = self.parent_of.get(parent)
        return decompose_matrix4(matrix)

    def check_node(self, node_index: object, context: str) -> int:
        if not isinstance(node_index, int) or not 0 <= node_index < len(self.nodes):
            raise FormatError(f"{context}: node {node_index} out of range")
        return node_index

    def bone_from_node(self, node_index: int, parent: Optional[int]) -> Bone:
        node = self.nodes[self.check_node(node_index, "Bone")]
        translation, rotation, scale = self.node_trs(node)
        if not _is_uniform(scale):
            raise UnsupportedFeatureError(
                f"Joint node {node_index} ({node.get('name')!r}) has non-uniform scale {scale}"
            )
        return Bone(
            name=node.get("name") or f"bone{node_index}",
            parent=parent,
            translation=_from_gltf_point(translation, self.unit),
            rotation=_convert_rotation(rotation),
            scale=scale[0],
        )

    # -- materials -----------------------------------------------------------

    def material_texture(self, material: Dict[str, Any]) -> str:
        extras = material.get("extras") or {}
        if "texture" in extras:
            return str(extras["texture"])
        base = (material.get("pbrMetallicRoughness") or {}).get("baseColorTexture")
        if not base:
            return ""
        textures = self.gltf.get("textures", [])
        images = self.gltf.get("images", [])
        texture_index = base.get("index", -1)
        if not 0 <= texture_index < len(textures):
            return ""
        image_index = textures[texture_index].get("source", -1)
        if not 0 <= image_index < len(images):
            return ""
        image = images[image_index]
        if "uri" in image and not image["uri"].startswith("data:"):
            return unquote(image["uri"])
        return image.get("name", "")

    def import_materials(self) -> None:
        for material in self.gltf.get("materials", []):
            extras = material.get("extras") or {}
            alpha_mode = material.get("alphaMode", "OPAQUE")
            cutoff = float(material.get("alphaCutoff", 0.5))
            self.materials.append(Material(
                texture=self.material_texture(material),
                alpha_enabled=bool(extras.get("alpha_enabled", alpha_mode != "OPAQUE")),
                two_sided=bool(material.get("doubleSided", False)),
                alpha_ref=int(extras.get("alpha_ref", round(cutoff * 255.0))),
                blend_mode=int(extras.get("blend_mode", 1 if alpha_mode == "BLEND" else 0)),
            ))

    def material_for(self, primitive: Dict[str, Any], fallback: Optional[int]) -> int:
        material = primitive.get("material", fallback)
        if material is not None and 0 <= material < len(self.materials):
            return material
        if self.default_material is None:
            self.default_material = len(self.materials)
            self.materials.append(Material(texture=""))
        return self.default_material

    # -- skeletons -----------------------------------------------------------

    def skeleton_from_skin(self, skin_index: int, meta: Optional[Dict[str, Any]]) -> Skeleton:
        skins = self.gltf.get("skins", [])
        if not 0 <= skin_index < len(skins):
            raise InvalidSkeletonError(f"Skin {skin_index} out of range")
        skin = skins[skin_index]
        joints: List[int] = [
            self.check_node(node, f"Skin {skin_index} joint") for node in skin.get("joints", [])
        ]
        joint_slot = {node: slot for slot, node in enumerate(joints)}

        parent_slot: List[Optional[int]] = []
        for node in joints:
            parent = self.parent_of.get(node)
            steps = 0
            while parent is not None and parent not in joint_slot:
                steps += 1
                if steps > len(self.nodes):
                    raise InvalidSkeletonError(f"Skin {skin_index}: cyclic node hierarchy")
                parent = self.parent_of.get(parent)
            parent_slot.append(None if parent is None else joint_slot[parent])

        # Bones are stored parents-first; reorder joints when the skin does not.
        order: List[int] = []
        placed: set = set()
        for slot in range(len(joints)):
            chain = []
            current: Optional[int] = slot
            while current is not None and current not in placed:
                if current in chain:
                    raise InvalidSkeletonError(f"Skin {skin_index}: joint hierarchy has a cycle")
                chain.append(current)
                current = parent_slot[current]
            for pending in reversed(chain):
                placed.add(pending)
                order.append(pending)
        bone_of_slot = {slot: bone for bone, slot in enumerate(order)}

        skeleton_index = len(self.skeletons)
        bones: List[Bone] = []
        for slot in order:
            parent = parent_slot[slot]
            bones.append(self.bone_from_node(joints[slot], None if parent is None else bone_of_slot[parent]))
            self.joint_bone[joints[slot]] = (skeleton_index, bone_of_slot[slot])

        if meta is not None and "dummies" in meta:
            dummy_nodes = [self.check_node(node, f"Skin {skin_index} dummy") for node in meta["dummies"]]
        else:
            dummy_nodes = [
                child
                for node in joints
                for child in self.nodes[node].get("children", [])
                if (self.nodes[child].get("extras") or {}).get("dummy")
            ]
        dummies: List[Bone] = []
        for node_index in dummy_nodes:
            parent_node = self.parent_of.get(node_index)
            parent = bone_of_slot[joint_slot[parent_node]] if parent_node in joint_slot else None
            dummies.append(self.bone_from_node(node_index, parent))
            self.dummy_nodes.add(node_index)

        self.skin_skeleton[skin_index] = skeleton_index
        self.skin_slot_to_bone[skin_index] = [bone_of_slot[slot] for slot in range(len(joints))]
        return Skeleton(
            name=(meta or {}).get("name") or skin.get("name") or f"skeleton{skeleton_index}",
            bones=bones,
            dummies=dummies,
        )

    def import_skeletons(self) -> None:
        meta_list = self.rose.get("skeletons")
        if meta_list is None:
            for skin_index in range(len(self.gltf.get("skins", []))):
                self.skeletons.append(self.skeleton_from_skin(skin_index, None))
            return

        for meta in meta_list:
            skin_index = meta.get("skin")
            if skin_index is None:
                skeleton = Skeleton(name=meta.get("name", ""))
                for node_index in meta.get("dummies", []):
                    skeleton.dummies.append(self.bone_from_node(node_index, None))
                    self.dummy_nodes.add(node_index)
            else:
                skeleton = self.skeleton_from_skin(skin_index, meta)
            skeleton.version = int(meta.get("version", skeleton.version))
            skeleton.tail = _decode_tail(meta.get("tail"))
            self.skeletons.append(skeleton)

    # -- meshes --------------------------------------------------------------

    def mesh_key(self, gltf_mesh_index: int, primitive_index: int, skin_index: Optional[int]) -> object:
        gltf_mesh = self.gltf["meshes"][gltf_mesh_index]
        extras = gltf_mesh.get("extras") or {}
        if "rose_mesh" in extras and len(gltf_mesh.get("primitives", [])) == 1:
            return ("rose", int(extras["rose_mesh"]))
        primitive = gltf_mesh["primitives"][primitive_index]
        attributes = tuple(sorted(primitive.get("attributes", {}).items()))
        return (attributes, primitive.get("indices"), skin_index)

    def pool_mesh(self, gltf_mesh_index: int, primitive_index: int, skin_index: Optional[int]) -> int:
        key = self.mesh_key(gltf_mesh_index, primitive_index, skin_index)
        self.decoded_primitives.add((gltf_mesh_index, primitive_index))
        if key in self.mesh_slots:
            return self.mesh_slots[key]

        gltf_mesh = self.gltf["meshes"][gltf_mesh_index]
        primitives = gltf_mesh.get("primitives", [])
        name = gltf_mesh.get("name") or f"mesh{gltf_mesh_index}"
        if len(primitives) > 1:
            name = f"{name}_{primitive_index}"
        slot_to_bone = self.skin_slot_to_bone.get(skin_index) if skin_index is not None else None
        mesh = self.decode_primitive(name, primitives[primitive_index], slot_to_bone)

        if isinstance(key, tuple) and key[0] == "rose" and 0 <= key[1] < len(self.meshes):
            placeholder = self.meshes[key[1]]
            mesh.name = placeholder.name
            mesh.version = placeholder.version
            mesh.tail = placeholder.tail
            mesh.bounding_box = placeholder.bounding_box
            self.meshes[key[1]] = mesh
            slot = key[1]
        else:
            slot = len(self.meshes)
            self.meshes.append(mesh)
        self.mesh_slots[key] = slot
        return slot

    def decode_primitive(
        self,
        name: str,
        primitive: Dict[str, Any],
        slot_to_bone: Optional[List[int]],
    ) -> Mesh:
        if primitive.get("mode", TRIANGLES) != TRIANGLES:
            raise UnsupportedFeatureError(
                f"Mesh '{name}': primitive mode {primitive.get('mode')} is not a triangle list"
            )
        if primitive.get("targets"):
            raise UnsupportedFeatureError(f"Mesh '{name}': morph targets are not supported")

        attributes: Dict[str, int] = primitive.get("attributes", {})
        for semantic in attributes:
            if semantic.startswith("TEXCOORD_") and semantic not in ("TEXCOORD_0", "TEXCOORD_1"):
                raise UnsupportedFeatureError(
                    f"Mesh '{name}': {semantic} exceeds the two UV sets ZMS can store"
                )
            if semantic.startswith(("JOINTS_", "WEIGHTS_")) and semantic not in ("JOINTS_0", "WEIGHTS_0"):
                raise UnsupportedFeatureError(
                    f"Mesh '{name}': {semantic} exceeds four bone influences per vertex"
                )
        ignored = sorted(
            s for s in attributes
            if s not in ("POSITION", "NORMAL", "TEXCOORD_0", "TEXCOORD_1", "JOINTS_0", "WEIGHTS_0")
        )
        if ignored:
            _warn(self.warnings, "Mesh '%s': dropping attributes %s", name, ", ".join(ignored))

        if "POSITION" not in attributes:
            raise InvalidMeshError(f"Mesh '{name}': primitive has no POSITION")
        positions = self.read_accessor(attributes["POSITION"])
        count = len(positions)

        def read_optional(semantic: str, default: Tuple) -> List[Tuple]:
            if semantic not in attributes:
                return [default] * count
            values = self.read_accessor(attributes[semantic])
            if len(values) != count:
                raise InvalidMeshError(
                    f"Mesh '{name}': {semantic} has {len(values)} values for {count} vertices"
                )
            return values

        if "NORMAL" not in attributes:
            _warn(self.warnings, "Mesh '%s': no NORMAL, using +Y", name)
        if "TEXCOORD_0" not in attributes:
            _warn(self.warnings, "Mesh '%s': no TEXCOORD_0, using (0, 0)", name)
        normals = read_optional("NORMAL", (0.0, 1.0, 0.0))
        uv1 = read_optional("TEXCOORD_0", (0.0, 0.0))
        uv2 = read_optional("TEXCOORD_1", ()) if "TEXCOORD_1" in attributes else None

        skinned = "JOINTS_0" in attributes or "WEIGHTS_0" in attributes
        if skinned and not ("JOINTS_0" in attributes and "WEIGHTS_0" in attributes):
            raise InvalidMeshError(f"Mesh '{name}': JOINTS_0 and WEIGHTS_0 must appear together")
        joints = read_optional("JOINTS_0", ()) if skinned else None
        weights = read_optional("WEIGHTS_0", ()) if skinned else None

        vertices: List[Vertex] = []
        for i in range(count):
            bone_indices = None
            bone_weights = None
            if joints is not None and weights is not None:
                bone_weights = normalize_weights(tuple(float(w) for w in weights[i]), i)
                mapped = []
                for joint, weight in zip(joints[i], bone_weights):
                    if slot_to_bone is None:
                        mapped.append(int(joint))
                    elif joint < len(slot_to_bone):
                        mapped.append(slot_to_bone[joint])
                    elif weight > 0.0:
                        raise InvalidMeshError(
                            f"Mesh '{name}' vertex {i}: joint {joint} outside skin of {len(slot_to_bone)}"
                        )
                    else:
                        mapped.append(0)
                bone_indices = tuple(mapped)
            vertices.append(Vertex(
                position=_from_gltf_point(positions[i], self.unit),
                normal=_swap_yz(normals[i]),
                uv1=(float(uv1[i][0]), float(uv1[i][1])),
                uv2=(float(uv2[i][0]), float(uv2[i][1])) if uv2 is not None else None,
                bone_indices=bone_indices,  # type: ignore[arg-type]
                bone_weights=bone_weights,
            ))

        if "indices" in primitive:
            flat = [int(v[0]) for v in self.read_accessor(primitive["indices"])]
        else:
            flat = list(range(count))
        if len(flat) % 3:
            raise InvalidMeshError(f"Mesh '{name}': {len(flat)} indices is not a triangle list")
        if flat and max(flat) >= count:
            raise InvalidMeshError(f"Mesh '{name}': index {max(flat)} >= vertex count {count}")
        triangles = [(flat[i], flat[i + 2], flat[i + 1]) for i in range(0, len(flat), 3)]
        return Mesh(name=name, vertices=vertices, triangles=triangles)

    def import_meshes_and_instances(self) -> None:
        for meta in self.rose.get("meshes", []):
            bounding_box = meta.get("bounding_box")
            self.meshes.append(Mesh(
                name=meta.get("name", ""),
                bounding_box=(tuple(bounding_box[0]), tuple(bounding_box[1])) if bounding_box else None,
                version=int(meta.get("version", 8)),
                tail=_decode_tail(meta.get("tail")),
            ))

        gltf_meshes = self.gltf.get("meshes", [])
        for node_index, node in enumerate(self.nodes):
            if node_index in self.joint_bone or node_index in self.dummy_nodes:
                continue
            extras = node.get("extras") or {}
            if "mesh" not in node and "rose_mesh" not in extras:
                continue

            skin_index = node.get("skin")
            if skin_index is not None:
                skeleton = self.skin_skeleton.get(skin_index)
            else:
                skeleton = extras.get("skeleton")
            translation, rotation, scale = self.node_world_trs(node_index)
            name = node.get("name") or f"node{node_index}"

            def make_instance(instance_name: str, mesh_slot: int, material: int) -> ObjectInstance:
                return ObjectInstance(
                    name=instance_name,
                    mesh=mesh_slot,
                    material=material,
                    skeleton=skeleton,
                    position=_from_gltf_point(translation, self.unit),
                    rotation=_convert_rotation(rotation),
                    scale=_swap_yz(scale),
                    lightmapped=bool(extras.get("lightmapped", skeleton is None)),
                    atlas_region=extras.get("atlas_region"),
                )

            if "mesh" not in node:
                # Pool mesh too small to carry glTF geometry.
                self.instances.append(make_instance(
                    name, int(extras["rose_mesh"]), self.material_for({}, extras.get("material")),
                ))
                continue

            mesh_index = node["mesh"]
            if not isinstance(mesh_index, int) or not 0 <= mesh_index < len(gltf_meshes):
                raise FormatError(f"Node {node_index}: mesh {mesh_index} out of range")
            primitives = gltf_meshes[mesh_index].get("primitives", [])
            for primitive_index, primitive in enumerate(primitives):
                mesh_slot = self.pool_mesh(mesh_index, primitive_index, skin_index)
                instance_name = name if len(primitives) == 1 else f"{name}_{primitive_index}"
                self.instances.append(make_instance(
                    instance_name, mesh_slot, self.material_for(primitive, None),
                ))

        # glTF meshes no node places still belong to the pool.
        for mesh_index, gltf_mesh in enumerate(gltf_meshes):
            for primitive_index in range(len(gltf_mesh.get("primitives", []))):
                if (mesh_index, primitive_index) not in self.decoded_primitives:
                    self.pool_mesh(mesh_index, primitive_index, None)

    # -- animations ----------------------------------------------------------

    def read_track(self, sampler: Dict[str, Any], context: str) -> Tuple[List[float], List[Tuple], str]:
        for key in ("input", "output"):
            if sampler.get(key) is None:
                raise InvalidAnimationError(f"{context}: sampler has no {key} accessor")
        times = [float(v[0]) for v in self.read_accessor(sampler["input"])]
        values = self.read_accessor(sampler["output"])
        mode = sampler.get("interpolation", "LINEAR")
        if mode == "CUBICSPLINE":
            _warn(self.warnings, "%s: CUBICSPLINE interpolation degraded to LINEAR", context)
            values = values[1::3]
            mode = "LINEAR"
        elif mode not in ("STEP", "LINEAR"):
            _warn(self.warnings, "%s: unknown interpolation %r degraded to LINEAR", context, mode)
            mode = "LINEAR"
        if not times or len(values) != len(times):
            raise InvalidAnimationError(
                f"{context}: {len(values)} output values for {len(times)} key times"
            )
        for previous, current in zip(times, times[1:]):
            if current <= previous:
                raise InvalidAnimationError(f"{context}: key times must strictly increase")
        return times, values, mode

    def build_channel(self, skeleton: int, bone: int, group: Dict[str, Any], context: str) -> Channel:
        tracks: Dict[str, Tuple[List[float], List[Tuple], str]] = group["tracks"]
        converted: Dict[str, Tuple[List[float], List[Tuple], str]] = {}
        for path, (times, values, mode) in tracks.items():
            if path == "translation":
                values = [_from_gltf_point(v, self.unit) for v in values]
            elif path == "rotation":
                values = [_convert_rotation(v) for v in values]
            else:
                for value in values:
                    if not _is_uniform(value):
                        raise UnsupportedFeatureError(
                            f"{context}: non-uniform scale key {value} on a joint"
                        )
                values = [(v[0],) for v in values]
            converted[path] = (times, values, mode)

        bind = self.skeletons[skeleton].bones[bone]
        key_times = sorted({t for times, _values, _mode in converted.values() for t in times})
        keyframes: List[Keyframe] = []
        for time in key_times:
            translation = bind.translation
            rotation = bind.rotation
            scale = bind.scale
            if "translation" in converted:
                translation = _sample_track(*converted["translation"], time, spherical=False)  # type: ignore[assignment]
            if "rotation" in converted:
                rotation = _sample_track(*converted["rotation"], time, spherical=True)  # type: ignore[assignment]
            if "scale" in converted:
                scale = _sample_track(*converted["scale"], time, spherical=False)[0]
            keyframes.append(Keyframe(time=time, translation=translation, rotation=rotation, scale=scale))

        modes = {mode for _times, _values, mode in converted.values()}
        rose_mode = group.get("rose_interpolation")
        if rose_mode in Interpolation.__members__:
            interpolation = Interpolation[rose_mode]
        elif modes == {"STEP"}:
            interpolation = Interpolation.STEP
        else:
            if "STEP" in modes:
                _warn(self.warnings, "%s: mixed STEP/LINEAR samplers merged as SPHERICAL", context)
            interpolation = Interpolation.SPHERICAL

        channel = Channel(bone=bone, interpolation=interpolation, keyframes=keyframes)
        check_channel_times(channel, context)
        return channel

    def animations_from_gltf(self, animation_index: int) -> List[Animation]:
        gltf_animations = self.gltf.get("animations", [])
        if not isinstance(animation_index, int) or not 0 <= animation_index < len(gltf_animations):
            raise InvalidAnimationError(f"Animation {animation_index} out of range")
        gltf_animation = gltf_animations[animation_index]
        name = gltf_animation.get("name") or f"animation{animation_index}"
        samplers = gltf_animation.get("samplers", [])

        groups: Dict[Tuple[int, object], Dict[str, Any]] = {}
        for channel_index, channel in enumerate(gltf_animation.get("channels", [])):
            target = channel.get("target", {})
            node = target.get("node")
            path = target.get("path")
            context = f"Animation '{name}' channel {channel_index}"
            if path not in ("translation", "rotation", "scale"):
                _warn(self.warnings, "%s: %s tracks are not supported; skipped", context, path)
                continue
            if node not in self.joint_bone:
                _warn(self.warnings, "%s: target node %s is not a joint; skipped", context, node)
                continue
            sampler_index = channel.get("sampler", -1)
            if not 0 <= sampler_index < len(samplers):
                raise InvalidAnimationError(f"{context}: sampler {sampler_index} out of range")

            skeleton, bone = self.joint_bone[node]
            sampler = samplers[sampler_index]
            extras = sampler.get("extras") or {}
            group_key = (skeleton, extras.get("rose_channel", ("bone", bone)))
            group = groups.setdefault(group_key, {
                "bone": bone,
                "tracks": {},
                "rose_interpolation": extras.get("rose_interpolation"),
            })
            group["tracks"][path] = self.read_track(sampler, context)

        fps = int((gltf_animation.get("extras") or {}).get("fps", self.default_fps))
        by_skeleton: Dict[int, List[Channel]] = {}
        for (skeleton, _key), group in groups.items():
            channel = self.build_channel(
                skeleton, group["bone"], group, f"Animation '{name}' bone {group['bone']}",
            )
            by_skeleton.setdefault(skeleton, []).append(channel)

        if not by_skeleton:
            _warn(self.warnings, "Animation '%s' drives no joints; skipped", name)
            return []
        results = []
        for skeleton, channels in by_skeleton.items():
            suffix = "" if len(by_skeleton) == 1 else f"_{self.skeletons[skeleton].name}"
            results.append(Animation(name=name + suffix, fps=fps, channels=channels, skeleton=skeleton))
        return results

    def import_animations(self) -> None:
        meta_list = self.rose.get("animations")
        if meta_list is None:
            for animation_index in range(len(self.gltf.get("animations", []))):
                self.animations.extend(self.animations_from_gltf(animation_index))
            return

        for meta in meta_list:
            animation_index = meta.get("gltf_animation")
            imported = self.animations_from_gltf(animation_index) if animation_index is not None else []
            animation = imported[0] if imported else Animation(name="")
            animation.name = meta.get("name", animation.name)
            animation.fps = int(meta.get("fps", animation.fps))
            animation.skeleton = int(meta.get("skeleton", animation.skeleton))
            animation.version = int(meta.get("version", animation.version))
            animation.tail = _decode_tail(meta.get("tail"))
            self.animations.append(animation)

    # -- scene ---------------------------------------------------------------

    def run(self) -> Scene:
        buffers = self.gltf.get("buffers", [])
        if len(buffers) > 1:
            raise UnsupportedFeatureError(f"Document uses {len(buffers)} buffers; only one is supported")

        self.import_materials()
        self.import_skeletons()
        self.import_meshes_and_instances()
        self.import_animations()

        lightmap = self.rose.get("lightmap") or {}
        regions: List[AtlasRegion] = []
        for region_index, r in enumerate(lightmap.get("regions", [])):
            missing = [key for key in _REGION_KEYS if key not in r]
            if missing:
                raise FormatError(f"Atlas region {region_index}: missing {', '.join(missing)}")
            regions.append(AtlasRegion(**{key: int(r[key]) for key in _REGION_KEYS}))
        scene = Scene(
            name=self.rose.get("name") or self.root_scene.get("name") or "scene",
            meshes=self.meshes,
            skeletons=self.skeletons,
            materials=self.materials,
            animations=self.animations,
            instances=self.instances,
            lightmap_image=lightmap.get("image"),
            atlas_regions=regions,
            version=int(self.rose.get("version", OBJECT_LIST_VERSION)),
            tail=_decode_tail(self.rose.get("tail")),
        )
        validate_scene(scene)
        return scene


def import_scene(
    document: InterchangeDocument,
    options: Optional[BridgeOptions] = None,
) -> Tuple[Scene, List[str]]:
    """Rebuild a Scene from a glTF document. Returns the scene and any warnings."""
    try:
        importer = _SceneImporter(document, options or BridgeOptions())
        scene = importer.run()
    except (KeyError, IndexError, TypeError, ValueError, AttributeError, struct.error) as exc:
        # Wrong-shaped JSON (missing keys, bad indices, non-numeric values).
        raise FormatError(f"Malformed glTF document: {type(exc).__name__}: {exc}") from exc
    logging.debug(
        "Imported scene '%s': %d meshes, %d skeletons, %d animations, %d instances",
        scene.name, len(scene.meshes), len(scene.skeletons), len(scene.animations), len(scene.instances),
    )
    return scene, importer.warnings


# ---------------------------------------------------------------------------
# Containers
# ---------------------------------------------------------------------------

def align4(value: int) -> int:
    return (value + 3) & ~3


def build_glb(payload: Dict[str, Any], binary_blob: bytes) -> bytes:
    json_bytes = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    json_pad = align4(len(json_bytes)) - len(json_bytes)
    if json_pad:
        json_bytes += b" " * json_pad

    bin_pad = align4(len(binary_blob)) - len(binary_blob)
    if bin_pad:
        binary_blob += b"\x00" * bin_pad

    total_length = 12 + 8 + len(json_bytes)
    if binary_blob:
        total_length += 8 + len(binary_blob)

    out = bytearray()
    out += struct.pack("<III", GLTF_MAGIC, 2, total_length)
    out += struct.pack("<II", len(json_bytes), JSON_CHUNK_TYPE)
    out += json_bytes
    if binary_blob:
        out += struct.pack("<II", len(binary_blob), BIN_CHUNK_TYPE)
        out += binary_blob
    return bytes(out)


def load_glb_payload(data: bytes) -> Tuple[Dict[str, Any], bytes]:
    if len(data) < 20:
        raise TruncatedError("GLB too small")

    magic, version, total_length = struct.unpack_from("<III", data, 0)
    if magic != GLTF_MAGIC:
        raise UnknownFormatError("Invalid GLB magic")
    if version != 2:
        raise UnknownFormatError(f"Unsupported GLB version: {version}")
    if total_length > len(data):
        raise TruncatedError("GLB is truncated")

    offset = 12
    json_chunk: Optional[bytes] = None
    bin_chunk: bytes = b""

    while offset + 8 <= total_length:
        chunk_len, chunk_type = struct.unpack_from("<II", data, offset)
        offset += 8
        chunk_end = offset + chunk_len
        if chunk_end > total_length:
            raise TruncatedError("GLB chunk exceeds file size")

        chunk_data = bytes(data[offset:chunk_end])
        offset = chunk_end

        if chunk_type == JSON_CHUNK_TYPE and json_chunk is None:
            json_chunk = chunk_data
        elif chunk_type == BIN_CHUNK_TYPE and not bin_chunk:
            bin_chunk = chunk_data

    if json_chunk is None:
        raise FormatError("GLB missing JSON chunk")

    payload = json.loads(json_chunk.decode("utf-8").rstrip(" \t\r\n\x00"))
    if not isinstance(payload, dict):
        raise FormatError("GLB JSON root is not an object")

    return payload, bin_chunk


def to_glb(document: InterchangeDocument) -> bytes:
    payload = dict(document.document)
    if document.buffer:
        payload["buffers"] = [{"byteLength": len(document.buffer)}]
    return build_glb(payload, document.buffer)


def from_glb(data: bytes) -> InterchangeDocument:
    payload, binary_blob = load_glb_payload(data)
    return InterchangeDocument(document=payload, buffer=binary_blob)


def write_gltf(document: InterchangeDocument, path: Path, embed_buffers: bool = False) -> None:
    """Write *document* as ``path`` (.gltf JSON) plus a sibling .bin, or with a data URI."""
    payload = dict(document.document)
    if document.buffer:
        if embed_buffers:
            uri = "data:application/octet-stream;base64," + base64.b64encode(document.buffer).decode("ascii")
        else:
            bin_path = path.with_suffix(".bin")
            bin_path.write_bytes(document.buffer)
            uri = bin_path.name
        payload["buffers"] = [{"byteLength": len(document.buffer), "uri": uri}]
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")


def read_gltf(path: Path) -> InterchangeDocument:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise FormatError(f"{path}: invalid glTF JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise FormatError(f"{path}: glTF JSON root is not an object")

    buffers = payload.get("buffers", [])
    if len(buffers) > 1:
        raise UnsupportedFeatureError(f"{path}: {len(buffers)} buffers; only one is supported")
    data = b""
    if buffers:
        uri = buffers[0].get("uri")
        if uri is None:
            raise FormatError(f"{path}: buffer has no uri outside a GLB container")
        if uri.startswith("data:"):
            comma = uri.find(",")
            if comma == -1 or ";base64" not in uri[:comma]:
                raise UnsupportedFeatureError(f"{path}: only base64 data URIs are supported")
            data = base64.b64decode(uri[comma + 1:])
        else:
            bin_path = path.parent / unquote(uri)
            if not bin_path.is_file():
                raise TruncatedError(f"{path}: missing buffer file {bin_path.name}")
            data = bin_path.read_bytes()
        if len(data) < int(buffers[0].get("byteLength", 0)):
            raise TruncatedError(f"{path}: buffer shorter than declared byteLength")
    return InterchangeDocument(document=payload, buffer=data)


def load_interchange(path: Path) -> InterchangeDocument:
    if path.suffix.lower() == ".glb":
        return from_glb(path.read_bytes())
    return read_gltf(path)


def save_interchange(
    document: InterchangeDocument,
    path: Path,
    options: Optional[BridgeOptions] = None,
) -> None:
    options = options or BridgeOptions()
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix.lower() == ".glb":
        path.write_bytes(to_glb(document))
    else:
        write_gltf(document, path, embed_buffers=options.embed_buffers)
