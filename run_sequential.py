"""Single-threaded reference engine.

Every other engine is checked against the images this one writes.
"""
import logging
import sys

import config  # noqa: F401  pins BLAS threads before numpy loads
from filters import FilterSpec, filter_image
from images import list_inputs, load_or_skip, output_path, save_image
from timings import Stopwatch, TimingReport

logger = logging.getLogger(__name__)

ENGINE = 'sequential'


def process_one(job, spec, cfg, timing):
    with Stopwatch() as sw:
        job.output[:] = filter_image(job.pixels, spec)
    timing.process_ms = sw.ms

    with Stopwatch() as sw:
        save_image(job.output, output_path(cfg.output_dir, job, cfg.operation, cfg.keep_extension))
    timing.export_ms = sw.ms


def run(cfg):
    spec = FilterSpec.build(cfg.operation, cfg.gaussian_size, cfg.gaussian_sigma)
    paths = list_inputs(cfg.input_dir, cfg.output_dir)
    report = TimingReport(ENGINE, cfg.operation)

    # One image in memory at a time: load, filter, export, release.
    for path in paths:
        entry = load_or_skip(path, spec.output_channels)
        if entry is None:
            continue
        job, timing = entry
        with job:
            process_one(job, spec, cfg, timing)
        report.add(timing)
        logger.debug("%s: load %.4f ms, process %.4f ms, export %.4f ms",
                     timing.image_name, timing.load_ms, timing.process_ms, timing.export_ms)
    return report


if __name__ == "__main__":
    import main
    sys.exit(main.main(engine=ENGINE))
