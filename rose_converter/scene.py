"""
In-memory scene graph shared by the codec, the glTF bridge and the baker.

Pools (meshes, skeletons, materials, animations) are owned by the Scene.
Instances, animations and atlas regions refer into them by index only.
Quaternions are stored (x, y, z, w) in memory regardless of file order.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

Vec2 = Tuple[float, float]
Vec3 = Tuple[float, float, float]
Quat = Tuple[float, float, float, float]

IDENTITY_QUAT: Quat = (0.0, 0.0, 0.0, 1.0)


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------

@dataclass
class Vertex:
    position: Vec3
    normal: Vec3
    uv1: Vec2
    uv2: Optional[Vec2] = None
    bone_indices: Optional[Tuple[int, int, int, int]] = None
    bone_weights: Optional[Tuple[float, float, float, float]] = None


@dataclass
class Mesh:
    name: str
    vertices: List[Vertex] = field(default_factory=list)
    triangles: List[Tuple[int, int, int]] = field(default_factory=list)
    bounding_box: Optional[Tuple[Vec3, Vec3]] = None
    version: int = 8
    tail: bytes = b""

    @property
    def has_uv2(self) -> bool:
        return bool(self.vertices) and all(v.uv2 is not None for v in self.vertices)

    @property
    def is_skinned(self) -> bool:
        return bool(self.vertices) and all(
            v.bone_indices is not None and v.bone_weights is not None
            for v in self.vertices
        )


# ---------------------------------------------------------------------------
# Skeletons and animation
# ---------------------------------------------------------------------------

@dataclass
class Bone:
    name: str
    parent: Optional[int]
    translation: Vec3 = (0.0, 0.0, 0.0)
    rotation: Quat = IDENTITY_QUAT
    scale: float = 1.0


@dataclass
class Skeleton:
    name: str
    bones: List[Bone] = field(default_factory=list)
    # Attachment points; parented to real bones, never skinned against.
    dummies: List[Bone] = field(default_factory=list)
    version: int = 3
    tail: bytes = b""


class Interpolation(enum.IntEnum):
    STEP = 0
    LINEAR = 1
    SPHERICAL = 2


@dataclass
class Keyframe:
    time: float
    translation: Vec3 = (0.0, 0.0, 0.0)
    rotation: Quat = IDENTITY_QUAT
    scale: float = 1.0


@dataclass
class Channel:
    bone: int
    interpolation: Interpolation = Interpolation.LINEAR
    keyframes: List[Keyframe] = field(default_factory=list)


@dataclass
class Animation:
    name: str
    fps: int = 30
    channels: List[Channel] = field(default_factory=list)
    skeleton: int = 0
    version: int = 3
    tail: bytes = b""

    @property
    def duration(self) -> float:
        ends = [c.keyframes[-1].time for c in self.channels if c.keyframes]
        return max(ends) if ends else 0.0


# ---------------------------------------------------------------------------
# Placement
# ---------------------------------------------------------------------------

@dataclass
class Material:
    texture: str
    alpha_enabled: bool = False
    two_sided: bool = False
    alpha_ref: int = 128
    blend_mode: int = 0


@dataclass
class ObjectInstance:
    name: str
    mesh: int
    material: int
    skeleton: Optional[int] = None
    position: Vec3 = (0.0, 0.0, 0.0)
    rotation: Quat = IDENTITY_QUAT
    scale: Vec3 = (1.0, 1.0, 1.0)
    lightmapped: bool = True
    atlas_region: Optional[int] = None

    @property
    def is_static(self) -> bool:
        return self.skeleton is None


@dataclass
class AtlasRegion:
    """Placement of one instance's texel block inside the lightmap atlas.

    ``x``/``y``/``width``/``height`` cover the whole block including the
    padding border; the baked interior starts ``padding`` texels in.
    """

    instance: int
    x: int
    y: int
    width: int
    height: int
    padding: int

    @property
    def interior(self) -> Tuple[int, int, int, int]:
        return (
            self.x + self.padding,
            self.y + self.padding,
            self.width - 2 * self.padding,
            self.height - 2 * self.padding,
        )


@dataclass
class Scene:
    name: str = "scene"
    meshes: List[Mesh] = field(default_factory=list)
    skeletons: List[Skeleton] = field(default_factory=list)
    materials: List[Material] = field(default_factory=list)
    animations: List[Animation] = field(default_factory=list)
    instances: List[ObjectInstance] = field(default_factory=list)
    lightmap_image: Optional[str] = None
    atlas_regions: List[AtlasRegion] = field(default_factory=list)
    version: int = 2
    tail: bytes = b""
