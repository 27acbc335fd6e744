# Standard library imports
import importlib
import logging
import sys

# Local imports
from config import parse_args, setup_logging
from errors import BenchmarkError
from timings import format_timings, log_summary, write_timings

logger = logging.getLogger('main')

# Engine name -> module implementing `run(cfg)`. Imported on demand so that the
# CPU engines work without numba or mpi4py installed.
ENGINE_MODULES = {
    'sequential': 'run_sequential',
    'openmp': 'run_threaded',
    'cuda': 'run_gpu',
    'mpi': 'run_mpi',
}


def load_engine(name):
    return importlib.import_module(ENGINE_MODULES[name])


def run_engine(cfg):
    """Run one engine over the batch; returns its TimingReport (None on non-root MPI ranks)."""
    return load_engine(cfg.engine).run(cfg)


def main(argv=None, engine=None):
    """`<input_dir> <output_dir> <operation>` -> exit status.

    `engine` fixes the engine for the per-engine entry scripts; otherwise it
    comes from --engine.
    """
    cfg = parse_args(argv, engine=engine)
    log_file = setup_logging(cfg.verbose, cfg.log_file)
    if log_file:
        logger.info("Logging to %s", log_file)

    try:
        report = run_engine(cfg)
    except BenchmarkError as exc:
        logger.error("%s", exc)
        return 1

    if report is None:
        return 0

    path = write_timings(report, cfg.output_dir)
    log_summary(report, logger)
    logger.info("Timings written to %s", path)
    if cfg.echo_json:
        sys.stdout.write(format_timings(report))
    return 0


if __name__ == "__main__":
    sys.exit(main())
