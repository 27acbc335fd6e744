import logging
import os

import numpy as np
from PIL import Image, UnidentifiedImageError

from config import IMAGE_EXTENSIONS, OUTPUT_EXTENSION
from errors import ConfigurationError, EncodeError, LoadError
from timings import ImageTiming, Stopwatch

logger = logging.getLogger(__name__)

INPUT_CHANNELS = 3


class ImageJob:
    """One decoded input image and the output buffer its filter pass writes.

    The job owns both buffers from load until `release()`; use it as a context
    manager so they are dropped on every path, including skips and failures.
    """

    def __init__(self, path, pixels, channels_out):
        self.path = path
        self.name, self.ext = os.path.splitext(os.path.basename(path))
        self.pixels = pixels
        self.pixels.setflags(write=False)
        self.height, self.width = pixels.shape[:2]
        self.channels_in = INPUT_CHANNELS
        self.channels_out = channels_out
        self.output = np.zeros((self.height, self.width, channels_out), dtype=np.uint8)

    @property
    def filename(self):
        return self.name + self.ext

    @property
    def input_nbytes(self):
        return self.width * self.height * self.channels_in

    @property
    def output_nbytes(self):
        return self.width * self.height * self.channels_out

    def release(self):
        self.pixels = None
        self.output = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    def __repr__(self):
        return f"ImageJob({self.filename!r}, {self.width}x{self.height})"


def is_image_file(path):
    return os.path.isfile(path) and os.path.splitext(path)[1].lower() in IMAGE_EXTENSIONS


def enumerate_images(path):
    """Input image paths in lexicographic order (a single file is its own list)."""
    if os.path.isfile(path):
        return [path]
    if not os.path.isdir(path):
        raise ConfigurationError(f"Input folder does not exist: {path}")
    return sorted(os.path.join(path, name) for name in os.listdir(path)
                  if is_image_file(os.path.join(path, name)))


def decode_rgb(path):
    """Decode any Pillow-readable file to an H x W x 3 uint8 array."""
    try:
        with Image.open(path) as img:
            return np.array(img.convert('RGB'), dtype=np.uint8)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise LoadError(path, exc) from exc


def load_image(path, channels_out):
    return ImageJob(path, decode_rgb(path), channels_out)


def output_path(output_dir, job, operation, keep_extension=False):
    """`<stem>_<operation>.<ext>`; .png unless the input extension is kept."""
    ext = job.ext.lstrip('.') if keep_extension and job.ext else OUTPUT_EXTENSION
    return os.path.join(output_dir, f"{job.name}_{operation}.{ext}")


def save_image(arr, path):
    """Encode an H x W x C uint8 buffer; one channel is written as grayscale."""
    if arr.ndim == 3 and arr.shape[2] == 1:
        arr = arr[..., 0]
    try:
        Image.fromarray(arr.astype(np.uint8)).save(path)
    except (OSError, ValueError, KeyError) as exc:
        raise EncodeError(path, exc) from exc


def list_inputs(input_dir, output_dir):
    """Enumerate the batch and create the output folder; an empty batch is fatal."""
    paths = enumerate_images(input_dir)
    if not paths:
        raise ConfigurationError(f"No images found in {input_dir}")
    os.makedirs(output_dir, exist_ok=True)
    return paths


def load_or_skip(path, channels_out):
    """Load one image with its load timing, or log and return None if it cannot be decoded."""
    timing = ImageTiming(os.path.basename(path))
    try:
        with Stopwatch() as sw:
            job = load_image(path, channels_out)
    except LoadError as exc:
        logger.warning("Skipping image: %s", exc)
        return None
    timing.load_ms = sw.ms
    return job, timing


def load_batch(paths, channels_out):
    loaded = []
    for path in paths:
        entry = load_or_skip(path, channels_out)
        if entry is not None:
            loaded.append(entry)
    return loaded
