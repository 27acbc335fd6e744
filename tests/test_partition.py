import unittest

import numpy as np
import pytest

from filters import FilterSpec, apply_block, filter_image, filter_pixel, window_at
from partition import HaloBlock, byte_layout, partition, plan_halo_exchange

from conftest import random_rgb


class TestPartition(unittest.TestCase):
    def test_five_rows_three_workers(self):
        ranges = partition(5, 3)
        self.assertEqual([r.rows for r in ranges], [2, 2, 1])
        self.assertEqual([(r.start, r.end) for r in ranges], [(0, 2), (2, 4), (4, 5)])

    def test_more_workers_than_rows(self):
        ranges = partition(3, 5)
        self.assertEqual([r.rows for r in ranges], [1, 1, 1, 0, 0])
        self.assertEqual(ranges[-1].start, 3)

    def test_coverage_and_balance(self):
        for height in range(0, 40):
            for workers in range(1, 10):
                ranges = partition(height, workers)
                self.assertEqual(len(ranges), workers)
                self.assertEqual(ranges[0].start, 0)
                self.assertEqual(ranges[-1].end, height)
                for a, b in zip(ranges, ranges[1:]):
                    self.assertEqual(a.end, b.start)
                    self.assertGreaterEqual(a.rows, b.rows)
                rows = [r.rows for r in ranges]
                self.assertLessEqual(max(rows) - min(rows), 1)

    def test_rejects_bad_arguments(self):
        with self.assertRaises(ValueError):
            partition(10, 0)
        with self.assertRaises(ValueError):
            partition(-1, 2)


def test_byte_layout():
    layout = byte_layout(partition(5, 3), width=4, channels=3)
    assert layout.counts == (24, 24, 12)
    assert layout.displacements == (0, 24, 48)
    assert sum(layout.counts) == 5 * 4 * 3


def test_single_round_when_partitions_are_thick():
    plan = plan_halo_exchange(partition(100, 4), radius=13)
    assert len(plan.rounds) == 1
    step = plan.rounds[0]
    assert step.send_up == (0, 13, 13, 13)
    assert step.send_down == (13, 13, 13, 0)
    assert step.recv_from_below(3) == 0
    assert step.recv_from_above(0) == 0


def test_no_rounds_without_radius_or_neighbors():
    assert plan_halo_exchange(partition(10, 4), radius=0).rounds == ()
    assert plan_halo_exchange(partition(10, 1), radius=3).rounds == ()


def simulate_exchange(pixels, ranges, radius):
    """Apply a halo plan to in-memory blocks the way ranks would over the wire."""
    height = pixels.shape[0]
    blocks = [HaloBlock(pixels[r.start:r.end], r.start, height) for r in ranges]
    for step in plan_halo_exchange(ranges, radius).rounds:
        ups = [b.send_rows_up(step.send_up[i]) for i, b in enumerate(blocks)]
        downs = [b.send_rows_down(step.send_down[i]) for i, b in enumerate(blocks)]
        for i, block in enumerate(blocks):
            block.bottom = ups[i + 1] if i + 1 < len(blocks) else ups[i][:0]
            block.top = downs[i - 1] if i > 0 else downs[i][:0]
    return blocks


@pytest.mark.parametrize("height,workers,radius", [(10, 6, 4), (7, 7, 3), (5, 3, 13), (20, 4, 2)])
def test_halo_blocks_reproduce_whole_image(height, workers, radius):
    pixels = random_rgb(height, 6, seed=height)
    ranges = partition(height, workers)
    blocks = simulate_exchange(pixels, ranges, radius)
    spec = FilterSpec.build('gaussian', gaussian_size=2 * radius + 1, gaussian_sigma=13.0)

    for r, block in zip(ranges, blocks):
        if not r.rows:
            continue
        lo, hi = max(0, r.start - radius), min(height, r.end + radius)
        np.testing.assert_array_equal(block.top, pixels[lo:r.start])
        np.testing.assert_array_equal(block.bottom, pixels[r.end:hi])

    stitched = np.concatenate([apply_block(b.padded(radius), spec) for r, b in zip(ranges, blocks) if r.rows])
    np.testing.assert_array_equal(stitched, filter_image(pixels, spec))


def test_thin_partitions_need_several_rounds():
    plan = plan_halo_exchange(partition(10, 6), radius=4)
    assert len(plan.rounds) > 1


def test_halo_block_sample_clamps():
    pixels = random_rgb(6, 4, seed=11)
    ranges = partition(6, 3)
    blocks = simulate_exchange(pixels, ranges, 1)
    middle = blocks[1]
    assert middle.sample(1, 0).tolist() == pixels[1, 0].tolist()
    assert middle.sample(4, -5).tolist() == pixels[4, 0].tolist()
    assert middle.sample(2, 9).tolist() == pixels[2, 3].tolist()
    top = blocks[0]
    assert top.sample(-3, 2).tolist() == pixels[0, 2].tolist()
    bottom = blocks[2]
    assert bottom.sample(10, 1).tolist() == pixels[5, 1].tolist()


def test_halo_block_sample_rejects_rows_it_does_not_hold():
    pixels = random_rgb(6, 4, seed=12)
    middle = simulate_exchange(pixels, partition(6, 3), 1)[1]
    with pytest.raises(IndexError):
        middle.sample(0, 0)
    with pytest.raises(IndexError):
        middle.sample(5, 1)
    bare = HaloBlock(pixels[2:4], start=2, height=6)
    with pytest.raises(IndexError):
        bare.sample(1, 0)
    with pytest.raises(IndexError):
        bare.sample(4, 0)


@pytest.mark.parametrize("spec", [FilterSpec.build('gaussian', gaussian_size=5), FilterSpec.build('sobel')],
                         ids=['gaussian', 'sobel'])
def test_halo_block_matches_per_pixel_reference(spec):
    pixels = random_rgb(8, 5, seed=13)
    ranges = partition(8, 3)
    blocks = simulate_exchange(pixels, ranges, spec.radius)
    for r, block in zip(ranges, blocks):
        out = apply_block(block.padded(spec.radius), spec)
        for y in range(r.start, r.end):
            for x in range(block.width):
                window = window_at(block.sample, y, x, spec.radius)
                assert list(filter_pixel(spec, window)) == out[y - r.start, x].tolist()
