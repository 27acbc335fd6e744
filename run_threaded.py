"""Shared-memory parallel engine ("openmp").

Each image is split into contiguous row ranges with `partition()` and the
ranges are filtered concurrently by a thread pool. numpy releases the GIL
inside the stencil arithmetic, so the row blocks really run in parallel.
Exports are then handed to the same pool and joined before the run ends.
"""
import concurrent.futures
import contextlib
import logging
import sys

import config  # noqa: F401  pins BLAS threads before numpy loads
from filters import FilterSpec, filter_rows
from images import list_inputs, load_batch, output_path, save_image
from partition import partition
from timings import Stopwatch, TimingReport

logger = logging.getLogger(__name__)

ENGINE = 'openmp'


def _filter_range(job, spec, rows):
    # Ranges are disjoint, so workers never write the same output row.
    job.output[rows.start:rows.end] = filter_rows(job.pixels, spec, rows.start, rows.end)


def filter_parallel(job, spec, executor, worker_count):
    """Filter one image with every worker taking one row range."""
    futures = [executor.submit(_filter_range, job, spec, rows)
               for rows in partition(job.height, worker_count) if rows.rows]
    for future in futures:
        future.result()


def _export(job, path, timing):
    with Stopwatch() as sw:
        save_image(job.output, path)
    timing.export_ms = sw.ms
    job.release()


def run(cfg):
    spec = FilterSpec.build(cfg.operation, cfg.gaussian_size, cfg.gaussian_sigma)
    paths = list_inputs(cfg.input_dir, cfg.output_dir)
    worker_count = cfg.worker_count
    report = TimingReport(ENGINE, cfg.operation)
    logger.info("Filtering with %d worker thread(s)", worker_count)

    loaded = load_batch(paths, spec.output_channels)
    with contextlib.ExitStack() as stack:
        for job, _ in loaded:
            stack.enter_context(job)

        with concurrent.futures.ThreadPoolExecutor(max_workers=worker_count) as executor:
            for job, timing in loaded:
                with Stopwatch() as sw:
                    filter_parallel(job, spec, executor, worker_count)
                timing.process_ms = sw.ms
                logger.debug("%s: process %.4f ms", timing.image_name, timing.process_ms)

            exports = [executor.submit(_export, job,
                                       output_path(cfg.output_dir, job, cfg.operation, cfg.keep_extension),
                                       timing)
                       for job, timing in loaded]
            # Join every export before the timings are finalized.
            for future in exports:
                future.result()

    for _, timing in loaded:
        report.add(timing)
    return report


if __name__ == "__main__":
    import main
    sys.exit(main.main(engine=ENGINE))
