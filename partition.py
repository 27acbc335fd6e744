"""Row decomposition of an image across workers.

The same `partition()` drives the threaded engine's per-thread row loops and
the distributed engine's rank assignment, so both split an image identically.
"""
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np

from filters import pad_block


@dataclass(frozen=True)
class RowRange:
    """Half-open row range [start, end) owned by worker `index`."""
    index: int
    start: int
    end: int

    @property
    def rows(self):
        return self.end - self.start


def partition(height, worker_count):
    """Split `height` rows over `worker_count` workers.

    Every worker gets height // worker_count rows; the first
    height % worker_count workers get one extra row each.
    """
    if worker_count < 1:
        raise ValueError(f"worker_count must be >= 1, got {worker_count}")
    if height < 0:
        raise ValueError(f"height must be >= 0, got {height}")
    base, remainder = divmod(height, worker_count)
    ranges = []
    start = 0
    for index in range(worker_count):
        rows = base + (1 if index < remainder else 0)
        ranges.append(RowRange(index, start, start + rows))
        start += rows
    return ranges


@dataclass(frozen=True)
class ByteLayout:
    counts: Tuple[int, ...]
    displacements: Tuple[int, ...]


def byte_layout(ranges, width, channels):
    """Element counts and offsets of each range in a row-major uint8 buffer."""
    row_bytes = width * channels
    counts = tuple(r.rows * row_bytes for r in ranges)
    displacements = tuple(r.start * row_bytes for r in ranges)
    return ByteLayout(counts, displacements)


# --- Halo exchange planning ---

@dataclass(frozen=True)
class HaloRound:
    """Rows each rank sends to the rank above (up) and below (down) in one round."""
    send_up: Tuple[int, ...]
    send_down: Tuple[int, ...]

    def recv_from_below(self, rank):
        return self.send_up[rank + 1] if rank + 1 < len(self.send_up) else 0

    def recv_from_above(self, rank):
        return self.send_down[rank - 1] if rank > 0 else 0


@dataclass(frozen=True)
class HaloPlan:
    radius: int
    rounds: Tuple[HaloRound, ...]


def plan_halo_exchange(ranges, radius):
    """Work out the paired send/receive rounds that give every rank its halo.

    A rank sends the rows it knows starting from its own first row upward, and
    the rows it knows ending at its own last row downward. When every non-empty
    partition holds at least `radius` rows one round suffices: a plain
    neighbor exchange. Thinner partitions relay their neighbors' rows in later
    rounds. The plan depends only on (ranges, radius), so all ranks agree on it
    without communicating.
    """
    height = ranges[-1].end if ranges else 0
    if radius <= 0 or len(ranges) < 2:
        return HaloPlan(radius, ())

    lo = [r.start for r in ranges]
    hi = [r.end for r in ranges]
    need_lo = [max(0, r.start - radius) for r in ranges]
    need_hi = [min(height, r.end + radius) for r in ranges]
    active = [r.rows > 0 for r in ranges]

    def satisfied():
        return all(not active[i] or (lo[i] <= need_lo[i] and hi[i] >= need_hi[i])
                   for i in range(len(ranges)))

    rounds = []
    while not satisfied():
        send_up = tuple(0 if i == 0 else min(radius, hi[i] - r.start)
                        for i, r in enumerate(ranges))
        send_down = tuple(0 if i == len(ranges) - 1 else min(radius, r.end - lo[i])
                          for i, r in enumerate(ranges))
        new_hi = [r.end + (send_up[i + 1] if i + 1 < len(ranges) else 0)
                  for i, r in enumerate(ranges)]
        new_lo = [r.start - (send_down[i - 1] if i > 0 else 0)
                  for i, r in enumerate(ranges)]
        if new_lo == lo and new_hi == hi:
            raise ValueError(f"halo exchange cannot make progress for radius {radius}")
        lo, hi = new_lo, new_hi
        rounds.append(HaloRound(send_up, send_down))
    return HaloPlan(radius, tuple(rounds))


@dataclass
class HaloBlock:
    """A rank's local rows plus the halo rows borrowed from its neighbors.

    `top` holds global rows [start - len(top), start), `bottom` holds
    [end, end + len(bottom)). Both may be empty at the image's global edges.
    """
    local: np.ndarray
    start: int
    height: int
    top: np.ndarray = None
    bottom: np.ndarray = None

    def __post_init__(self):
        empty = self.local[:0]
        if self.top is None:
            self.top = empty
        if self.bottom is None:
            self.bottom = empty

    @property
    def end(self):
        return self.start + self.local.shape[0]

    @property
    def width(self):
        return self.local.shape[1]

    def send_rows_up(self, count):
        """First `count` known rows from our own first row on (local, then bottom halo)."""
        if count <= self.local.shape[0]:
            return self.local[:count]
        return np.concatenate([self.local, self.bottom[:count - self.local.shape[0]]])

    def send_rows_down(self, count):
        """Last `count` known rows ending at our own last row (top halo, then local)."""
        if count == 0:
            return self.local[:0]
        if count <= self.local.shape[0]:
            return self.local[-count:]
        return np.concatenate([self.top[self.top.shape[0] - (count - self.local.shape[0]):], self.local])

    def sample(self, y, x):
        """Pixel at global (y, x) with replicate-edge clamping.

        Used with `filters.window_at` to check a block's halo content against
        the per-pixel reference. Raises IndexError when the clamped row is
        neither local nor in a halo this block received.
        """
        x = min(max(x, 0), self.width - 1)
        y = min(max(y, 0), self.height - 1)
        if self.start <= y < self.end:
            return self.local[y - self.start][x]
        if y < self.start:
            offset = y - (self.start - self.top.shape[0])
            rows = self.top
        else:
            offset = y - self.end
            rows = self.bottom
        if not 0 <= offset < rows.shape[0]:
            raise IndexError(f"row {y} is outside the rows held by block [{self.start}, {self.end})")
        return rows[offset][x]

    def padded(self, radius):
        return pad_block(self.local, radius, top=self.top, bottom=self.bottom)
