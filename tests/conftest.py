import os

import numpy as np
import pytest
from PIL import Image

# Run the CUDA kernels on numba's simulator; must be set before numba is imported.
os.environ.setdefault("NUMBA_ENABLE_CUDASIM", "1")


def random_rgb(height, width, seed=0):
    return np.random.default_rng(seed).integers(0, 256, size=(height, width, 3), dtype=np.uint8)


def write_png(path, pixels):
    Image.fromarray(pixels, 'RGB').save(path)
    return path


@pytest.fixture
def image_dir(tmp_path):
    """Three small PNGs with distinct sizes, plus a non-image file."""
    folder = tmp_path / "input"
    folder.mkdir()
    write_png(str(folder / "b_wide.png"), random_rgb(7, 13, seed=1))
    write_png(str(folder / "a_square.png"), random_rgb(10, 10, seed=2))
    write_png(str(folder / "c_tall.png"), random_rgb(12, 5, seed=3))
    (folder / "notes.txt").write_text("not an image")
    return folder


@pytest.fixture
def output_dir(tmp_path):
    return tmp_path / "output"
