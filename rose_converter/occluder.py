"""
Bounding-volume hierarchy over world-space triangles, used to answer
"does this ray hit anything before max_distance" for lightmap visibility rays.

The tree is built once and read-only afterwards, so worker processes can share
a pickled copy. Traversal is vectorised over rays with numpy: each node visit
tests the subset of rays that reached it.
"""

from __future__ import annotations

import logging
from typing import List, Sequence, Tuple

import numpy as np

from .mathutil import compose_matrix4
from .scene import ObjectInstance, Scene

LEAF_SIZE = 8
HIT_EPSILON = 1e-6


def instance_matrix(instance: ObjectInstance) -> np.ndarray:
    return np.asarray(
        compose_matrix4(instance.position, instance.rotation, instance.scale),
        dtype=np.float64,
    )


def world_triangles(scene: Scene, instance: ObjectInstance) -> np.ndarray:
    """Return (T, 3, 3) world-space corner positions of *instance*'s mesh."""
    mesh = scene.meshes[instance.mesh]
    if not mesh.triangles:
        return np.zeros((0, 3, 3), dtype=np.float64)
    positions = np.asarray([v.position for v in mesh.vertices], dtype=np.float64)
    matrix = instance_matrix(instance)
    world = positions @ matrix[:3, :3].T + matrix[:3, 3]
    return world[np.asarray(mesh.triangles, dtype=np.int64)]


class Occluder:
    def __init__(self, triangles: np.ndarray) -> None:
        triangles = np.asarray(triangles, dtype=np.float64).reshape(-1, 3, 3)
        self.num_triangles = len(triangles)

        node_min: List[np.ndarray] = []
        node_max: List[np.ndarray] = []
        node_left: List[int] = []
        node_right: List[int] = []
        node_start: List[int] = []
        node_count: List[int] = []
        order: List[np.ndarray] = []

        if self.num_triangles:
            centroids = triangles.mean(axis=1)
            lo = triangles.min(axis=1)
            hi = triangles.max(axis=1)

            # (node slot, triangle indices) still to be split.
            pending: List[Tuple[int, np.ndarray]] = []

            def new_node(indices: np.ndarray) -> int:
                node_min.append(lo[indices].min(axis=0))
                node_max.append(hi[indices].max(axis=0))
                node_left.append(-1)
                node_right.append(-1)
                node_start.append(0)
                node_count.append(0)
                pending.append((len(node_min) - 1, indices))
                return len(node_min) - 1

            new_node(np.arange(self.num_triangles))
            placed = 0
            while pending:
                node, indices = pending.pop()
                spread = centroids[indices].max(axis=0) - centroids[indices].min(axis=0)
                if len(indices) <= LEAF_SIZE or not spread.any():
                    node_start[node] = placed
                    node_count[node] = len(indices)
                    order.append(indices)
                    placed += len(indices)
                    continue
                axis = int(np.argmax(spread))
                ranked = indices[np.argsort(centroids[indices, axis], kind="stable")]
                half = len(ranked) // 2
                node_left[node] = new_node(ranked[:half])
                node_right[node] = new_node(ranked[half:])

        permutation = np.concatenate(order) if order else np.zeros(0, dtype=np.int64)
        ordered = triangles[permutation]
        self.v0 = ordered[:, 0]
        self.e1 = ordered[:, 1] - ordered[:, 0]
        self.e2 = ordered[:, 2] - ordered[:, 0]
        self.node_min = np.asarray(node_min, dtype=np.float64).reshape(-1, 3)
        self.node_max = np.asarray(node_max, dtype=np.float64).reshape(-1, 3)
        self.node_left = np.asarray(node_left, dtype=np.int64)
        self.node_right = np.asarray(node_right, dtype=np.int64)
        self.node_start = np.asarray(node_start, dtype=np.int64)
        self.node_count = np.asarray(node_count, dtype=np.int64)

    @classmethod
    def from_scene(cls, scene: Scene) -> "Occluder":
        """Occluder over every static (unskinned) instance in *scene*."""
        parts = [
            world_triangles(scene, instance)
            for instance in scene.instances
            if instance.is_static
        ]
        triangles = np.concatenate(parts) if parts else np.zeros((0, 3, 3))
        occluder = cls(triangles)
        logging.debug(
            "Occluder: %d triangles, %d BVH nodes", occluder.num_triangles, len(occluder.node_min)
        )
        return occluder

    def _intersect_leaf(
        self,
        origins: np.ndarray,
        directions: np.ndarray,
        start: int,
        count: int,
        max_distance: float,
    ) -> np.ndarray:
        """Moller-Trumbore of every ray against every triangle in one leaf."""
        v0 = self.v0[start:start + count][None]
        e1 = self.e1[start:start + count][None]
        e2 = self.e2[start:start + count][None]
        d = directions[:, None, :]

        p = np.cross(d, e2)
        det = np.sum(e1 * p, axis=-1)
        valid = np.abs(det) > 1e-12
        inv_det = np.where(valid, 1.0 / np.where(valid, det, 1.0), 0.0)

        s = origins[:, None, :] - v0
        u = np.sum(s * p, axis=-1) * inv_det
        q = np.cross(s, e1)
        v = np.sum(d * q, axis=-1) * inv_det
        t = np.sum(e2 * q, axis=-1) * inv_det

        hit = valid & (u >= 0.0) & (v >= 0.0) & (u + v <= 1.0) & (t > HIT_EPSILON) & (t < max_distance)
        return hit.any(axis=1)

    def any_hit(
        self,
        origins: Sequence,
        directions: Sequence,
        max_distance: float,
    ) -> np.ndarray:
        """Boolean per ray: True when some triangle lies within (0, max_distance)."""
        origins = np.asarray(origins, dtype=np.float64).reshape(-1, 3)
        directions = np.asarray(directions, dtype=np.float64).reshape(-1, 3)
        occluded = np.zeros(len(origins), dtype=bool)
        if not self.num_triangles or not len(origins):
            return occluded

        safe = np.where(np.abs(directions) < 1e-12, np.copysign(1e-12, directions), directions)
        inv_dir = 1.0 / safe

        stack: List[Tuple[int, np.ndarray]] = [(0, np.arange(len(origins)))]
        while stack:
            node, rays = stack.pop()
            rays = rays[~occluded[rays]]
            if not len(rays):
                continue

            t1 = (self.node_min[node] - origins[rays]) * inv_dir[rays]
            t2 = (self.node_max[node] - origins[rays]) * inv_dir[rays]
            t_near = np.minimum(t1, t2).max(axis=1)
            t_far = np.maximum(t1, t2).min(axis=1)
            inside = (t_far >= np.maximum(t_near, 0.0)) & (t_near <= max_distance)
            rays = rays[inside]
            if not len(rays):
                continue

            if self.node_left[node] < 0:
                hits = self._intersect_leaf(
                    origins[rays], directions[rays],
                    int(self.node_start[node]), int(self.node_count[node]), max_distance,
                )
                occluded[rays[hits]] = True
            else:
                stack.append((int(self.node_right[node]), rays))
                stack.append((int(self.node_left[node]), rays))
        return occluded
