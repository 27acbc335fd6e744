"""Distributed engine: each image is split into row blocks across MPI ranks.

Rank 0 owns all file I/O. For every image it broadcasts the dimensions,
scatters the row blocks, and each rank trades halo rows with its neighbors
before filtering its block locally. The filtered blocks are gathered back on
rank 0, which writes the output. A barrier separates consecutive images.

Launch with e.g. ``mpiexec -n 4 python run_mpi.py <in> <out> <operation>``.
"""
import logging
import os
import sys

from config import tag_rank  # pins BLAS threads before numpy loads
import numpy as np

from errors import BenchmarkError, CommunicationError, ConfigurationError, LoadError
from filters import FilterSpec, apply_block
from images import INPUT_CHANNELS, list_inputs, load_image, output_path, save_image
from partition import HaloBlock, byte_layout, partition, plan_halo_exchange
from timings import ImageTiming, Stopwatch, TimingReport

logger = logging.getLogger(__name__)

ENGINE = 'mpi'
ROOT = 0

# Message tags for rows travelling towards lower and higher ranks.
TAG_UP = 11
TAG_DOWN = 12


class DistributedFilter:
    """Filters one image at a time across every rank of `comm`.

    `no_partner` is the rank value a send or receive uses when there is no
    neighbor in that direction (MPI.PROC_NULL); such transfers move nothing.
    """

    def __init__(self, comm, spec, no_partner, root=ROOT):
        self.comm = comm
        self.spec = spec
        self.no_partner = no_partner
        self.root = root
        self.rank = comm.Get_rank()
        self.size = comm.Get_size()

    @property
    def is_root(self):
        return self.rank == self.root

    @property
    def above(self):
        return self.rank - 1 if self.rank > 0 else self.no_partner

    @property
    def below(self):
        return self.rank + 1 if self.rank < self.size - 1 else self.no_partner

    def share_header(self, job=None, skip=False):
        """Broadcast (ok, height, width, channels) from the root."""
        header = None
        if self.is_root:
            header = (False, 0, 0, 0) if skip else (True, job.height, job.width, INPUT_CHANNELS)
        return self.comm.bcast(header, root=self.root)

    def scatter_rows(self, pixels, ranges, width, channels):
        mine = ranges[self.rank]
        local = np.empty((mine.rows, width, channels), dtype=np.uint8)
        send = None
        if self.is_root:
            layout = byte_layout(ranges, width, channels)
            send = [pixels.reshape(-1), layout.counts, layout.displacements]
        self.comm.Scatterv(send, local, root=self.root)
        return local

    def exchange_halos(self, block, ranges, radius):
        """Run every round of the halo plan; each round is one paired Sendrecv per direction."""
        plan = plan_halo_exchange(ranges, radius)
        row_shape = block.local.shape[1:]
        for step in plan.rounds:
            up = np.ascontiguousarray(block.send_rows_up(step.send_up[self.rank]))
            bottom = np.empty((step.recv_from_below(self.rank),) + row_shape, dtype=np.uint8)
            self.comm.Sendrecv(up, dest=self.above, sendtag=TAG_UP,
                               recvbuf=bottom, source=self.below, recvtag=TAG_UP)

            down = np.ascontiguousarray(block.send_rows_down(step.send_down[self.rank]))
            top = np.empty((step.recv_from_above(self.rank),) + row_shape, dtype=np.uint8)
            self.comm.Sendrecv(down, dest=self.below, sendtag=TAG_DOWN,
                               recvbuf=top, source=self.above, recvtag=TAG_DOWN)
            block.top, block.bottom = top, bottom
        return block

    def gather_rows(self, filtered, ranges, width, output):
        recv = None
        if self.is_root:
            layout = byte_layout(ranges, width, self.spec.output_channels)
            recv = [output.reshape(-1), layout.counts, layout.displacements]
        self.comm.Gatherv(np.ascontiguousarray(filtered).reshape(-1), recv, root=self.root)

    def filter_image(self, job=None, skip=False):
        """Collective: every rank calls this once per image.

        The root passes the loaded job (or skip=True when it could not be
        loaded); the filtered image lands in job.output on the root. Returns
        False on every rank when the image was skipped.
        """
        ok, height, width, channels = self.share_header(job, skip)
        if not ok:
            return False

        ranges = partition(height, self.size)
        mine = ranges[self.rank]
        local = self.scatter_rows(job.pixels if self.is_root else None, ranges, width, channels)

        radius = self.spec.radius
        block = self.exchange_halos(HaloBlock(local, mine.start, height), ranges, radius)
        if mine.rows:
            filtered = apply_block(block.padded(radius), self.spec)
        else:
            filtered = np.empty((0, width, self.spec.output_channels), dtype=np.uint8)

        self.gather_rows(filtered, ranges, width, job.output if self.is_root else None)
        return True


def share_paths(comm, cfg):
    """Rank 0 lists the batch and broadcasts it, or the reason it could not."""
    payload = None
    if comm.Get_rank() == ROOT:
        try:
            payload = list_inputs(cfg.input_dir, cfg.output_dir)
        except ConfigurationError as exc:
            payload = str(exc)
        except Exception as exc:
            # The other ranks are already waiting in bcast.
            abort(comm, "Cannot list %s: %s", cfg.input_dir, exc)
            raise
    payload = comm.bcast(payload, root=ROOT)
    if isinstance(payload, str):
        raise ConfigurationError(payload)
    return payload


def abort(comm, message, *args):
    logger.error(message, *args)
    comm.Abort(1)


def load_on_root(comm, path, spec, policy):
    """Rank 0 decodes the next image; returns (job, timing), or (None, None) to skip it.

    Any failure other than a skippable LoadError aborts every rank, since the
    others are about to block in the header broadcast.
    """
    try:
        with Stopwatch() as sw:
            job = load_image(path, spec.output_channels)
    except LoadError as exc:
        if policy == 'abort':
            abort(comm, "%s; aborting all ranks", exc)
            raise
        logger.warning("Skipping image: %s", exc)
        return None, None
    except Exception as exc:
        abort(comm, "Failed to load %s: %s; aborting all ranks", path, exc)
        raise
    return job, ImageTiming(os.path.basename(path), load_ms=sw.ms)


def run(cfg, comm=None, no_partner=None):
    """Run the batch on every rank; rank 0 returns the report, the others None."""
    if comm is None:
        from mpi4py import MPI
        comm = MPI.COMM_WORLD
        no_partner = MPI.PROC_NULL
        tag_rank(comm.Get_rank())

    rank = comm.Get_rank()
    spec = FilterSpec.build(cfg.operation, cfg.gaussian_size, cfg.gaussian_sigma)
    paths = share_paths(comm, cfg)
    worker = DistributedFilter(comm, spec, no_partner)
    report = TimingReport(ENGINE, cfg.operation) if worker.is_root else None
    if worker.is_root:
        logger.info("Distributing %d image(s) over %d rank(s)", len(paths), worker.size)

    for path in paths:
        job, timing, skip = None, None, False
        if worker.is_root:
            job, timing = load_on_root(comm, path, spec, cfg.on_load_error)
            skip = job is None

        try:
            with Stopwatch() as sw:
                done = worker.filter_image(job, skip)
            if worker.is_root and done:
                timing.process_ms = sw.ms
                with job:
                    with Stopwatch() as sw:
                        save_image(job.output, output_path(cfg.output_dir, job, cfg.operation,
                                                           cfg.keep_extension))
                    timing.export_ms = sw.ms
                report.add(timing)
                logger.debug("%s: process %.4f ms, export %.4f ms",
                             timing.image_name, timing.process_ms, timing.export_ms)
            comm.Barrier()
        except BenchmarkError as exc:
            abort(comm, "Rank %d failed: %s", rank, exc)
            raise
        except (RuntimeError, ValueError) as exc:
            # MPI.Exception derives from RuntimeError.
            abort(comm, "Rank %d communication failure: %s", rank, exc)
            raise CommunicationError(str(exc)) from exc
        except Exception as exc:
            abort(comm, "Rank %d failed: %s", rank, exc)
            raise
    return report


if __name__ == "__main__":
    import main
    sys.exit(main.main(engine=ENGINE))
