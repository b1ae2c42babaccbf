"""Shelf packing of per-instance texel blocks into a power-of-two lightmap atlas."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np
from PIL import Image

from .scene import AtlasRegion

Block = Tuple[int, int]  # (width, height) including padding


@dataclass
class LightmapAtlas:
    width: int
    height: int
    pixels: np.ndarray  # (height, width) uint8 grayscale
    regions: List[AtlasRegion] = field(default_factory=list)

    @classmethod
    def blank(cls, width: int, height: int) -> "LightmapAtlas":
        return cls(width=width, height=height, pixels=np.zeros((height, width), dtype=np.uint8))

    def region_pixels(self, region: AtlasRegion) -> np.ndarray:
        return self.pixels[region.y:region.y + region.height, region.x:region.x + region.width]

    def to_image(self) -> Image.Image:
        return Image.fromarray(self.pixels, "L")

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self.to_image().save(path)


def next_power_of_two(value: int) -> int:
    size = 1
    while size < value:
        size *= 2
    return size


def shelf_pack(
    blocks: List[Tuple[int, Block]],
    width: int,
    max_height: Optional[int] = None,
) -> Tuple[Dict[int, Tuple[int, int]], List[int], int]:
    """Place pre-sorted ``(key, (w, h))`` blocks left-to-right in rows.

    Returns placements by key, keys that did not fit under *max_height*, and
    the total height used.
    """
    placements: Dict[int, Tuple[int, int]] = {}
    overflow: List[int] = []
    shelf_y = 0
    shelf_height = 0
    cursor_x = 0

    for key, (block_w, block_h) in blocks:
        if block_w > width:
            overflow.append(key)
            continue
        if cursor_x + block_w > width:
            shelf_y += shelf_height
            shelf_height = 0
            cursor_x = 0
        if max_height is not None and shelf_y + block_h > max_height:
            overflow.append(key)
            continue
        placements[key] = (cursor_x, shelf_y)
        cursor_x += block_w
        shelf_height = max(shelf_height, block_h)

    return placements, overflow, shelf_y + shelf_height


def pack_blocks(
    blocks: Dict[int, Block],
    max_size: int,
) -> Tuple[int, int, Dict[int, Tuple[int, int]], List[int]]:
    """Pack *blocks* into the smallest square power-of-two width that holds them.

    Returns (width, height, placements, overflow). Height is the power of two
    covering the rows actually used. Blocks that cannot fit even at
    *max_size* are returned in ``overflow`` and left unplaced.
    """
    ordered = sorted(blocks.items(), key=lambda item: (-item[1][1], -item[1][0], item[0]))
    if not ordered:
        return 1, 1, {}, []

    limit = 1 << (max(max_size, 1).bit_length() - 1)
    widest = max(w for _key, (w, _h) in ordered)
    size = min(next_power_of_two(widest), limit)
    while True:
        placements, overflow, used = shelf_pack(ordered, size)
        if not overflow and used <= size:
            break
        if size >= limit:
            placements, overflow, used = shelf_pack(ordered, size, max_height=size)
            break
        size *= 2

    height = min(size, next_power_of_two(max(used, 1)))
    return size, height, placements, overflow


def regions_overlap(a: AtlasRegion, b: AtlasRegion) -> bool:
    return (
        a.x < b.x + b.width
        and b.x < a.x + a.width
        and a.y < b.y + b.height
        and b.y < a.y + a.height
    )
