"""
lightmap.py
===========

Bakes static lighting for placed, unskinned object instances into a shared
grayscale lightmap atlas.

Per instance:
  1. size a square texel block from the instance's world surface area,
  2. shelf-pack all blocks into one power-of-two atlas,
  3. rasterize the mesh (primary UVs normalised to the block) and for each
     covered texel cast hemisphere visibility rays against the occluder BVH,
  4. dilate the result over uncovered texels and the padding border,
  5. write a secondary UV onto every vertex addressing the block interior.

The input Scene is never modified; the baked copy is returned together with
the atlas and a per-instance report. One instance failing does not stop the
others.
"""

from __future__ import annotations

import copy
import logging
import math
import threading
import time
from collections import Counter
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from .atlas import LightmapAtlas, pack_blocks
from .codec import validate_scene
from .errors import AtlasOverflowError, BakeError, DegenerateGeometryError
from .occluder import Occluder, instance_matrix
from .scene import AtlasRegion, Scene

# Small negative tolerance so texels exactly on shared edges are covered.
BARY_EPSILON = -1e-5

RAY_CHUNK = 65536


@dataclass
class BakeConfig:
    texel_density: float = 16.0
    padding_texels: int = 2
    sample_count: int = 32
    ambient_level: float = 0.25
    light_intensity: float = 0.75
    max_distance: float = 1000.0
    ray_offset: float = 1e-3
    max_atlas_size: int = 4096
    workers: int = 1
    seed: int = 42
    atlas_name: str = "lightmap.png"

    def check(self) -> None:
        """Raise ValueError for settings that cannot produce a valid bake."""
        if not self.sample_count >= 1:
            raise ValueError(f"sample_count must be at least 1, got {self.sample_count}")
        if not self.padding_texels >= 0:
            raise ValueError(f"padding_texels must not be negative, got {self.padding_texels}")
        if not (math.isfinite(self.texel_density) and self.texel_density > 0.0):
            raise ValueError(f"texel_density must be positive, got {self.texel_density}")
        if not self.max_atlas_size >= 1:
            raise ValueError(f"max_atlas_size must be at least 1, got {self.max_atlas_size}")
        if not (math.isfinite(self.max_distance) and self.max_distance > 0.0):
            raise ValueError(f"max_distance must be positive, got {self.max_distance}")


@dataclass
class BakeReport:
    baked: List[int] = field(default_factory=list)
    failures: List[BakeError] = field(default_factory=list)
    cancelled: bool = False
    atlas_width: int = 0
    atlas_height: int = 0
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.failures and not self.cancelled

    def to_dict(self) -> Dict[str, object]:
        return {
            "baked": list(self.baked),
            "failed": len(self.failures),
            "failures": [
                {"instance": exc.instance, "type": type(exc).__name__, "error": str(exc)}
                for exc in self.failures
            ],
            "cancelled": self.cancelled,
            "atlas": [self.atlas_width, self.atlas_height],
            "elapsed": round(self.elapsed, 3),
        }


@dataclass
class BakeResult:
    atlas: LightmapAtlas
    scene: Scene
    report: BakeReport


@dataclass
class _InstanceJob:
    index: int
    name: str
    side: int
    padding: int
    world: np.ndarray  # (T, 3, 3) corner positions
    normals: np.ndarray  # (T, 3, 3) corner normals
    texel_uv: np.ndarray  # (T, 3, 2) corners in block texel units
    vertex_uv: np.ndarray  # (N, 2) local UV in [0, 1]


# ---------------------------------------------------------------------------
# Sampling helpers
# ---------------------------------------------------------------------------

def hemisphere_directions(count: int, seed: int) -> np.ndarray:
    """Cosine-weighted Z-up hemisphere directions, identical for a given seed."""
    rng = np.random.default_rng(seed=seed)
    u1 = rng.uniform(0.0, 1.0, count)
    u2 = rng.uniform(0.0, 1.0, count)

    theta = np.arccos(np.sqrt(u1))
    phi = 2.0 * np.pi * u2
    return np.stack(
        [np.sin(theta) * np.cos(phi), np.sin(theta) * np.sin(phi), np.cos(theta)],
        axis=1,
    )


def _tangent_frames(normals: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    helper = np.zeros_like(normals)
    use_x = np.abs(normals[:, 0]) < 0.9
    helper[use_x, 0] = 1.0
    helper[~use_x, 1] = 1.0
    tangent = np.cross(helper, normals)
    tangent /= np.linalg.norm(tangent, axis=1, keepdims=True)
    bitangent = np.cross(normals, tangent)
    return tangent, bitangent


def _normalize_rows(values: np.ndarray) -> np.ndarray:
    lengths = np.linalg.norm(values, axis=-1, keepdims=True)
    return np.divide(values, lengths, out=np.zeros_like(values), where=lengths > 1e-12)


# ---------------------------------------------------------------------------
# Per-instance work
# ---------------------------------------------------------------------------

def prepare_instance(scene: Scene, index: int, config: BakeConfig) -> _InstanceJob:
    """Collect world-space geometry and block size; raise BakeError if unbakeable."""
    instance = scene.instances[index]
    mesh = scene.meshes[instance.mesh]
    label = f"Instance {index} ({instance.name!r}, mesh '{mesh.name}')"
    if not mesh.triangles:
        raise DegenerateGeometryError(f"{label}: mesh has no triangles", index)

    positions = np.asarray([v.position for v in mesh.vertices], dtype=np.float64)
    normals = np.asarray([v.normal for v in mesh.vertices], dtype=np.float64)
    uv = np.asarray([v.uv1 for v in mesh.vertices], dtype=np.float64)
    triangles = np.asarray(mesh.triangles, dtype=np.int64)

    matrix = instance_matrix(instance)
    linear = matrix[:3, :3]
    try:
        normal_matrix = np.linalg.inv(linear).T
    except np.linalg.LinAlgError:
        raise DegenerateGeometryError(f"{label}: transform is singular", index) from None
    world = positions @ linear.T + matrix[:3, 3]
    world_normals = _normalize_rows(normals @ normal_matrix.T)

    world_tris = world[triangles]
    world_area = 0.5 * np.linalg.norm(
        np.cross(world_tris[:, 1] - world_tris[:, 0], world_tris[:, 2] - world_tris[:, 0]),
        axis=1,
    )
    total_area = float(world_area.sum())
    if total_area <= 1e-12:
        raise DegenerateGeometryError(f"{label}: mesh has zero surface area", index)

    used = np.unique(triangles)
    uv_min = uv[used].min(axis=0)
    uv_span = uv[used].max(axis=0) - uv_min
    if (uv_span <= 1e-12).any():
        raise DegenerateGeometryError(f"{label}: primary UVs span zero area", index)
    # Vertices outside every triangle stay inside the block.
    local_uv = np.clip((uv - uv_min) / uv_span, 0.0, 1.0)

    tri_uv = local_uv[triangles]
    uv_area = 0.5 * np.abs(
        (tri_uv[:, 1, 0] - tri_uv[:, 0, 0]) * (tri_uv[:, 2, 1] - tri_uv[:, 0, 1])
        - (tri_uv[:, 2, 0] - tri_uv[:, 0, 0]) * (tri_uv[:, 1, 1] - tri_uv[:, 0, 1])
    )
    collapsed = np.nonzero((uv_area <= 1e-12) & (world_area > 1e-12))[0]
    if len(collapsed):
        raise DegenerateGeometryError(
            f"{label}: triangle {int(collapsed[0])} has zero UV area but covers "
            f"{float(world_area[collapsed[0]]):.6g} world units",
            index,
        )

    side = max(1, int(math.ceil(math.sqrt(total_area) * config.texel_density)))
    return _InstanceJob(
        index=index,
        name=instance.name,
        side=side,
        padding=config.padding_texels,
        world=world_tris,
        normals=world_normals[triangles],
        texel_uv=tri_uv * side,
        vertex_uv=local_uv,
    )


def _rasterize(job: _InstanceJob) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Per-texel world position / normal and coverage mask for the block interior."""
    side = job.side
    positions = np.zeros((side, side, 3), dtype=np.float64)
    normals = np.zeros((side, side, 3), dtype=np.float64)
    covered = np.zeros((side, side), dtype=bool)

    for tri in range(len(job.texel_uv)):
        (x0, y0), (x1, y1), (x2, y2) = job.texel_uv[tri]
        denom = (y1 - y2) * (x0 - x2) + (x2 - x1) * (y0 - y2)
        if abs(denom) < 1e-12:
            continue

        xmin = max(0, int(np.floor(min(x0, x1, x2))))
        xmax = min(side - 1, int(np.ceil(max(x0, x1, x2))))
        ymin = max(0, int(np.floor(min(y0, y1, y2))))
        ymax = min(side - 1, int(np.ceil(max(y0, y1, y2))))
        if xmin > xmax or ymin > ymax:
            continue

        # Sample at texel centres.
        xs = np.arange(xmin, xmax + 1, dtype=np.float64) + 0.5
        ys = np.arange(ymin, ymax + 1, dtype=np.float64) + 0.5
        xx, yy = np.meshgrid(xs, ys)

        w0 = ((y1 - y2) * (xx - x2) + (x2 - x1) * (yy - y2)) / denom
        w1 = ((y2 - y0) * (xx - x2) + (x0 - x2) * (yy - y2)) / denom
        w2 = 1.0 - w0 - w1
        inside = (w0 >= BARY_EPSILON) & (w1 >= BARY_EPSILON) & (w2 >= BARY_EPSILON)
        if not inside.any():
            continue

        iy, ix = np.nonzero(inside)
        weights = np.stack([w0[iy, ix], w1[iy, ix], w2[iy, ix]], axis=1)
        corners = job.world[tri]
        corner_normals = job.normals[tri]

        texel_normals = _normalize_rows(weights @ corner_normals)
        flat = np.linalg.norm(texel_normals, axis=1) < 0.5
        if flat.any():
            face_normal = np.cross(corners[1] - corners[0], corners[2] - corners[0])
            length = np.linalg.norm(face_normal)
            texel_normals[flat] = face_normal / length if length > 1e-12 else (0.0, 0.0, 1.0)

        positions[ymin + iy, xmin + ix] = weights @ corners
        normals[ymin + iy, xmin + ix] = texel_normals
        covered[ymin + iy, xmin + ix] = True

    return positions, normals, covered


def dilate(values: np.ndarray, filled: np.ndarray) -> np.ndarray:
    """Grow filled texels into unfilled neighbours (8-connected) until none remain."""
    result = values.copy()
    current = filled.copy()
    height, width = current.shape

    while not current.all():
        grown = current.copy()
        grown_values = result.copy()
        for dr, dc in [(-1, 0), (1, 0), (0, -1), (0, 1),
                       (-1, -1), (-1, 1), (1, -1), (1, 1)]:
            # Neighbour at (r + dr, c + dc) feeds texel (r, c).
            dst_r = slice(max(0, -dr), height - max(0, dr))
            dst_c = slice(max(0, -dc), width - max(0, dc))
            src_r = slice(max(0, dr), height - max(0, -dr))
            src_c = slice(max(0, dc), width - max(0, -dc))

            can_fill = ~grown[dst_r, dst_c] & current[src_r, src_c]
            if can_fill.any():
                target = grown_values[dst_r, dst_c]
                target[can_fill] = result[src_r, src_c][can_fill]
                grown[dst_r, dst_c] |= can_fill

        if not (grown & ~current).any():
            break
        result = grown_values
        current = grown
    return result


def bake_block(
    job: _InstanceJob,
    occluder: Occluder,
    directions: np.ndarray,
    config: BakeConfig,
) -> np.ndarray:
    """Return the (side + 2 * padding)^2 uint8 block for one instance."""
    positions, normals, covered = _rasterize(job)
    pad = job.padding
    size = job.side + 2 * pad
    illumination = np.zeros((size, size), dtype=np.float64)
    filled = np.zeros((size, size), dtype=bool)

    rows, cols = np.nonzero(covered)
    if len(rows):
        texel_pos = positions[rows, cols]
        texel_normal = normals[rows, cols]
        tangent, bitangent = _tangent_frames(texel_normal)

        ray_dirs = (
            directions[None, :, 0:1] * tangent[:, None, :]
            + directions[None, :, 1:2] * bitangent[:, None, :]
            + directions[None, :, 2:3] * texel_normal[:, None, :]
        ).reshape(-1, 3)
        origins = np.repeat(texel_pos + texel_normal * config.ray_offset, len(directions), axis=0)

        hits = np.zeros(len(origins), dtype=bool)
        for start in range(0, len(origins), RAY_CHUNK):
            stop = start + RAY_CHUNK
            hits[start:stop] = occluder.any_hit(origins[start:stop], ray_dirs[start:stop], config.max_distance)

        unoccluded = 1.0 - hits.reshape(len(rows), len(directions)).mean(axis=1)
        illumination[rows + pad, cols + pad] = np.clip(
            config.ambient_level + unoccluded * config.light_intensity, 0.0, 1.0
        )
        filled[rows + pad, cols + pad] = True
        illumination = dilate(illumination, filled)
    else:
        logging.warning(
            "Instance %d (%r): no texel centre inside any triangle; block filled with ambient",
            job.index, job.name,
        )
        illumination[:] = np.clip(config.ambient_level, 0.0, 1.0)

    return np.rint(illumination * 255.0).astype(np.uint8)


# ---------------------------------------------------------------------------
# Worker pool
# ---------------------------------------------------------------------------

def _bake_one(
    job: _InstanceJob,
    occluder: Occluder,
    directions: np.ndarray,
    config: BakeConfig,
) -> Tuple[int, Optional[np.ndarray], Optional[BakeError]]:
    """Bake one instance. Returns (instance, block, error)."""
    try:
        block = bake_block(job, occluder, directions, config)
    except BakeError as exc:
        return job.index, None, exc
    return job.index, block, None


# Per-process state, only ever set inside pool worker processes.
_WORKER_STATE: Dict[str, object] = {}


def _init_bake_worker(occluder: Occluder, directions: np.ndarray, config: BakeConfig) -> None:
    _WORKER_STATE["occluder"] = occluder
    _WORKER_STATE["directions"] = directions
    _WORKER_STATE["config"] = config


def _bake_worker(job: _InstanceJob) -> Tuple[int, Optional[np.ndarray], Optional[BakeError]]:
    """Worker function for parallel baking."""
    return _bake_one(
        job,
        _WORKER_STATE["occluder"],  # type: ignore[arg-type]
        _WORKER_STATE["directions"],  # type: ignore[arg-type]
        _WORKER_STATE["config"],  # type: ignore[arg-type]
    )


def _run_jobs(
    jobs: List[_InstanceJob],
    occluder: Occluder,
    directions: np.ndarray,
    config: BakeConfig,
    report: BakeReport,
    cancel: Optional[threading.Event],
) -> Dict[int, np.ndarray]:
    blocks: Dict[int, np.ndarray] = {}

    def record(index: int, block: Optional[np.ndarray], error: Optional[BakeError]) -> None:
        if error is not None:
            logging.warning("Bake failed for instance %d: %s", index, error)
            report.failures.append(error)
        else:
            blocks[index] = block  # type: ignore[assignment]
        logging.debug("Baked %d/%d instances", len(blocks), len(jobs))

    if config.workers <= 1:
        for job in jobs:
            if cancel is not None and cancel.is_set():
                report.cancelled = True
                break
            record(*_bake_one(job, occluder, directions, config))
        return blocks

    with ProcessPoolExecutor(
        max_workers=config.workers,
        initializer=_init_bake_worker,
        initargs=(occluder, directions, config),
    ) as executor:
        futures = [executor.submit(_bake_worker, job) for job in jobs]
        for future in as_completed(futures):
            if future.cancelled():
                continue
            record(*future.result())
            if cancel is not None and cancel.is_set() and not report.cancelled:
                report.cancelled = True
                for pending in futures:
                    pending.cancel()
    return blocks


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def bake(
    scene: Scene,
    config: Optional[BakeConfig] = None,
    cancel: Optional[threading.Event] = None,
) -> BakeResult:
    """Bake lightmaps for every static, lightmapped instance of *scene*.

    Returns the atlas, a baked copy of the scene (secondary UVs, atlas regions,
    lightmap image name) and a report listing baked and failed instances.
    *cancel* is polled between instances.
    """
    config = config or BakeConfig()
    config.check()
    start_time = time.time()
    work = copy.deepcopy(scene)
    validate_scene(work)
    report = BakeReport()

    targets = [
        index for index, instance in enumerate(work.instances)
        if instance.is_static and instance.lightmapped
    ]
    logging.info(
        "Baking %d of %d instances (density=%.2f, samples=%d, workers=%d)",
        len(targets), len(work.instances), config.texel_density, config.sample_count, config.workers,
    )

    # Occluder is complete and read-only before any texel is baked.
    occluder = Occluder.from_scene(work)
    directions = hemisphere_directions(config.sample_count, config.seed)

    jobs: Dict[int, _InstanceJob] = {}
    for index in targets:
        try:
            jobs[index] = prepare_instance(work, index, config)
        except BakeError as exc:
            logging.warning("Bake failed for instance %d: %s", index, exc)
            report.failures.append(exc)

    pad = 2 * config.padding_texels
    block_sizes = {index: (job.side + pad, job.side + pad) for index, job in jobs.items()}
    width, height, placements, overflow = pack_blocks(block_sizes, config.max_atlas_size)
    for index in overflow:
        block_w, block_h = block_sizes[index]
        exc = AtlasOverflowError(
            f"Instance {index} ({work.instances[index].name!r}): {block_w}x{block_h} block "
            f"does not fit in a {config.max_atlas_size} atlas; lower texel_density",
            index,
        )
        logging.warning("Bake failed for instance %d: %s", index, exc)
        report.failures.append(exc)
        del jobs[index]

    atlas = LightmapAtlas.blank(width, height)
    report.atlas_width, report.atlas_height = width, height
    blocks = _run_jobs(
        [jobs[index] for index in targets if index in jobs],
        occluder, directions, config, report, cancel,
    )

    # Write back: regions, secondary UVs, copy-on-bake for shared meshes.
    for instance in work.instances:
        instance.atlas_region = None
    work.atlas_regions = []
    mesh_users = Counter(instance.mesh for instance in work.instances)

    for index in targets:
        block = blocks.get(index)
        if block is None:
            continue
        job = jobs[index]
        x, y = placements[index]
        region = AtlasRegion(
            instance=index,
            x=x,
            y=y,
            width=block.shape[1],
            height=block.shape[0],
            padding=config.padding_texels,
        )
        atlas.region_pixels(region)[:, :] = block
        atlas.regions.append(region)

        instance = work.instances[index]
        if mesh_users[instance.mesh] > 1:
            clone = copy.deepcopy(work.meshes[instance.mesh])
            clone.name = f"{clone.name}_lm{index}"
            mesh_users[instance.mesh] -= 1
            work.meshes.append(clone)
            instance.mesh = len(work.meshes) - 1
            mesh_users[instance.mesh] = 1

        origin_x = x + config.padding_texels
        origin_y = y + config.padding_texels
        for vertex, (u, v) in zip(work.meshes[instance.mesh].vertices, job.vertex_uv):
            vertex.uv2 = (
                float((origin_x + u * job.side) / width),
                float((origin_y + v * job.side) / height),
            )

        instance.atlas_region = len(work.atlas_regions)
        work.atlas_regions.append(region)
        report.baked.append(index)

    work.lightmap_image = config.atlas_name if work.atlas_regions else None
    report.elapsed = time.time() - start_time
    logging.info(
        "Bake complete in %.1fs: %d baked, %d failed, atlas %dx%d%s",
        report.elapsed, len(report.baked), len(report.failures), width, height,
        " (cancelled)" if report.cancelled else "",
    )
    return BakeResult(atlas=atlas, scene=work, report=report)
