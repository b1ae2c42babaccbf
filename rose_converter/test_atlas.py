#!/usr/bin/env python3
import itertools
import tempfile
import unittest
from pathlib import Path

import numpy as np
from PIL import Image

from rose_converter.atlas import LightmapAtlas, next_power_of_two, pack_blocks, regions_overlap, shelf_pack
from rose_converter.scene import AtlasRegion


def _regions(blocks, placements):
    return [
        AtlasRegion(instance=key, x=x, y=y, width=blocks[key][0], height=blocks[key][1], padding=0)
        for key, (x, y) in placements.items()
    ]


class PackBlocksTests(unittest.TestCase):
    def test_single_block(self) -> None:
        width, height, placements, overflow = pack_blocks({0: (20, 20)}, 4096)
        self.assertEqual((width, height), (32, 32))
        self.assertEqual(placements, {0: (0, 0)})
        self.assertEqual(overflow, [])

    def test_many_blocks_fit_without_overlap(self) -> None:
        rng = np.random.default_rng(7)
        blocks = {i: (int(rng.integers(4, 60)), int(rng.integers(4, 60))) for i in range(40)}
        width, height, placements, overflow = pack_blocks(blocks, 4096)

        self.assertEqual(overflow, [])
        self.assertEqual(set(placements), set(blocks))
        self.assertEqual(width & (width - 1), 0)
        self.assertEqual(height & (height - 1), 0)
        regions = _regions(blocks, placements)
        for region in regions:
            self.assertGreaterEqual(region.x, 0)
            self.assertGreaterEqual(region.y, 0)
            self.assertLessEqual(region.x + region.width, width)
            self.assertLessEqual(region.y + region.height, height)
        for a, b in itertools.combinations(regions, 2):
            self.assertFalse(regions_overlap(a, b), f"{a} overlaps {b}")

    def test_oversized_block_overflows(self) -> None:
        width, _height, placements, overflow = pack_blocks({0: (10, 10), 1: (300, 8)}, 256)
        self.assertEqual(overflow, [1])
        self.assertIn(0, placements)
        self.assertLessEqual(width, 256)

    def test_full_atlas_overflows_remaining_blocks(self) -> None:
        blocks = {i: (32, 32) for i in range(5)}
        width, height, placements, overflow = pack_blocks(blocks, 64)
        self.assertEqual((width, height), (64, 64))
        self.assertEqual(len(placements), 4)
        self.assertEqual(overflow, [4])

    def test_limit_rounds_down_to_power_of_two(self) -> None:
        width, _height, _placements, overflow = pack_blocks({0: (100, 100)}, 100)
        self.assertEqual(width, 64)
        self.assertEqual(overflow, [0])

    def test_empty(self) -> None:
        self.assertEqual(pack_blocks({}, 4096), (1, 1, {}, []))


class ShelfTests(unittest.TestCase):
    def test_rows_wrap_at_width(self) -> None:
        placements, overflow, used = shelf_pack([(0, (6, 4)), (1, (6, 3)), (2, (6, 2))], 12)
        self.assertEqual(placements, {0: (0, 0), 1: (6, 0), 2: (0, 4)})
        self.assertEqual(overflow, [])
        self.assertEqual(used, 6)

    def test_next_power_of_two(self) -> None:
        self.assertEqual([next_power_of_two(v) for v in (1, 2, 3, 20, 64, 65)], [1, 2, 4, 32, 64, 128])


class AtlasImageTests(unittest.TestCase):
    def test_save_writes_grayscale_png(self) -> None:
        atlas = LightmapAtlas.blank(8, 4)
        atlas.pixels[1:3, 2:6] = 200
        region = AtlasRegion(instance=0, x=2, y=1, width=4, height=2, padding=0)
        self.assertTrue((atlas.region_pixels(region) == 200).all())

        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "maps" / "lightmap.png"
            atlas.save(path)
            with Image.open(path) as image:
                self.assertEqual(image.mode, "L")
                self.assertEqual(image.size, (8, 4))
                self.assertEqual(image.getpixel((3, 2)), 200)
                self.assertEqual(image.getpixel((0, 0)), 0)


if __name__ == "__main__":
    unittest.main()
