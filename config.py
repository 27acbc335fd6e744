import argparse
import logging
import os
import sys
from dataclasses import dataclass
from typing import Optional, Tuple

# Disable internal parallelization in NumPy so every engine gets only the
# parallelism it creates itself.
os.environ.setdefault('OPENBLAS_NUM_THREADS', '1')
os.environ.setdefault('MKL_NUM_THREADS', '1')
os.environ.setdefault('NUMEXPR_MAX_THREADS', '1')
os.environ.setdefault('OMP_NUM_THREADS', '1')

# ============================================================================
# CONFIGURATION
# ============================================================================
OPERATIONS = ('grayscale', 'gaussian', 'sobel')

# Engine names as the orchestrator knows them (output_<engine>/timings.json)
ENGINES = ('sequential', 'openmp', 'cuda', 'mpi')
ENGINE_ALIASES = {
    'seq': 'sequential',
    'single': 'sequential',
    'threaded': 'openmp',
    'omp': 'openmp',
    'gpu': 'cuda',
    'distributed': 'mpi',
}

DEFAULT_GAUSSIAN_SIZE = 27
DEFAULT_GAUSSIAN_SIGMA = 13.0
DEFAULT_GPU_BLOCK = (16, 16)

IMAGE_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.bmp', '.tif', '.tiff')
OUTPUT_EXTENSION = 'png'
TIMINGS_FILENAME = 'timings.json'

LOAD_ERROR_POLICIES = ('abort', 'skip')

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


@dataclass(frozen=True)
class RunConfig:
    """Everything one engine run needs; built once from the command line."""
    input_dir: str
    output_dir: str
    operation: str
    engine: str = 'sequential'
    workers: Optional[int] = None
    gaussian_size: int = DEFAULT_GAUSSIAN_SIZE
    gaussian_sigma: float = DEFAULT_GAUSSIAN_SIGMA
    block: Tuple[int, int] = DEFAULT_GPU_BLOCK
    keep_extension: bool = False
    on_load_error: str = 'abort'
    log_file: Optional[str] = None
    echo_json: bool = False
    verbose: bool = False

    @property
    def worker_count(self):
        return self.workers or os.cpu_count() or 1


def resolve_engine(name):
    name = name.lower()
    name = ENGINE_ALIASES.get(name, name)
    if name not in ENGINES:
        raise argparse.ArgumentTypeError(
            f"unknown engine '{name}' (choose from {', '.join(ENGINES)})")
    return name


def _positive_int(value):
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value}")
    return number


def _odd_kernel_size(value):
    number = int(value)
    if number < 3 or number % 2 == 0:
        raise argparse.ArgumentTypeError(f"kernel size must be odd and >= 3, got {value}")
    return number


def build_parser(engine=None):
    prog = f"run_{engine}.py" if engine else "main.py"
    parser = argparse.ArgumentParser(
        prog=prog,
        description="Apply a stencil filter to every image in a folder and record per-stage timings.")
    parser.add_argument('input_dir', help="folder of input images (or a single image file)")
    parser.add_argument('output_dir', help="folder for filtered images and timings.json")
    parser.add_argument('operation', choices=OPERATIONS)
    if engine is None:
        parser.add_argument('--engine', type=resolve_engine, default='sequential',
                            help=f"execution engine: {', '.join(ENGINES)} (default: sequential)")
    parser.add_argument('--workers', type=_positive_int, default=None,
                        help="thread count for the openmp engine (default: CPU count)")
    parser.add_argument('--gaussian-size', type=_odd_kernel_size, default=DEFAULT_GAUSSIAN_SIZE)
    parser.add_argument('--gaussian-sigma', type=float, default=DEFAULT_GAUSSIAN_SIGMA)
    parser.add_argument('--block', type=_positive_int, nargs=2, default=list(DEFAULT_GPU_BLOCK),
                        metavar=('BX', 'BY'), help="CUDA thread block (default: 16 16)")
    parser.add_argument('--keep-extension', action='store_true',
                        help="write outputs with the input's extension instead of .png")
    parser.add_argument('--on-load-error', choices=LOAD_ERROR_POLICIES, default='abort',
                        help="mpi engine only: abort the group or skip the image on a decode failure")
    parser.add_argument('--log-file', default=None, help="also write the log to this file")
    parser.add_argument('--echo-json', action='store_true', help="print timings.json to stdout")
    parser.add_argument('-v', '--verbose', action='store_true')
    return parser


def parse_args(argv=None, engine=None):
    """Parse the `<input_dir> <output_dir> <operation>` contract into a RunConfig."""
    args = build_parser(engine).parse_args(argv)
    return RunConfig(
        input_dir=args.input_dir,
        output_dir=args.output_dir,
        operation=args.operation,
        engine=engine or args.engine,
        workers=args.workers,
        gaussian_size=args.gaussian_size,
        gaussian_sigma=args.gaussian_sigma,
        block=tuple(args.block),
        keep_extension=args.keep_extension,
        on_load_error=args.on_load_error,
        log_file=args.log_file,
        echo_json=args.echo_json,
        verbose=args.verbose,
    )


# ============================================================================
# LOGGING UTILITIES
# ============================================================================

def get_numbered_filename(base_path, extension):
    """Find next available numbered filename if base file exists"""
    if not os.path.exists(base_path):
        return base_path

    directory = os.path.dirname(base_path)
    base_name = os.path.splitext(os.path.basename(base_path))[0]

    counter = 1
    while True:
        new_path = os.path.join(directory, f"{base_name}_{counter}{extension}")
        if not os.path.exists(new_path):
            return new_path
        counter += 1


def setup_logging(verbose=False, log_file=None):
    """Console logging to stderr, plus an optional numbered log file.

    Returns the path of the log file actually opened, or None.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console)

    if not log_file:
        return None
    directory = os.path.dirname(log_file)
    if directory:
        os.makedirs(directory, exist_ok=True)
    log_file = get_numbered_filename(log_file, os.path.splitext(log_file)[1])
    file_handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)
    return log_file


def tag_rank(rank):
    """Prefix every log line with the MPI rank that wrote it."""
    formatter = logging.Formatter(LOG_FORMAT.replace('[%(levelname)s]', f'[rank {rank}] [%(levelname)s]'))
    for handler in logging.getLogger().handlers:
        handler.setFormatter(formatter)
