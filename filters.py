import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np

from config import DEFAULT_GAUSSIAN_SIGMA, DEFAULT_GAUSSIAN_SIZE
from errors import ConfigurationError

# ITU-R BT.601 luminance weights
LUMA_WEIGHTS = (0.299, 0.587, 0.114)

SOBEL_X = np.array([[-1, 0, 1], [-2, 0, 2], [-1, 0, 1]], dtype=np.float64)
SOBEL_Y = np.array([[-1, -2, -1], [0, 0, 0], [1, 2, 1]], dtype=np.float64)

NORMALIZATION_TOLERANCE = 1e-6


class Operation(str, Enum):
    GRAYSCALE = 'grayscale'
    GAUSSIAN = 'gaussian'
    SOBEL = 'sobel'

    @property
    def output_channels(self):
        return 3 if self is Operation.GAUSSIAN else 1


# --- Kernel tables ---

def validate_kernel(kernel, normalized=False):
    """Kernels must be square with an odd side so a center element exists."""
    if kernel.ndim != 2 or kernel.shape[0] != kernel.shape[1] or kernel.shape[0] % 2 == 0:
        raise ConfigurationError(f"kernel must be square with odd side length, got shape {kernel.shape}")
    if normalized and not math.isclose(float(kernel.sum()), 1.0, abs_tol=NORMALIZATION_TOLERANCE):
        raise ConfigurationError(f"Gaussian weights sum to {kernel.sum():.8f}, expected 1.0")
    return kernel


def gaussian_weights(size, sigma):
    """Normalized size x size Gaussian table, w(i, j) ~ exp(-(i^2 + j^2) / 2 sigma^2)."""
    if size < 1 or size % 2 == 0:
        raise ConfigurationError(f"Gaussian kernel size must be odd, got {size}")
    if sigma <= 0:
        raise ConfigurationError(f"Gaussian sigma must be positive, got {sigma}")
    radius = size // 2
    offsets = np.arange(-radius, radius + 1, dtype=np.float64)
    yy, xx = np.meshgrid(offsets, offsets, indexing='ij')
    kernel = np.exp(-(xx ** 2 + yy ** 2) / (2.0 * sigma ** 2))
    kernel /= kernel.sum()
    return validate_kernel(kernel, normalized=True)


@dataclass(frozen=True, eq=False)
class FilterSpec:
    """The selected operation and the (read-only) weights it convolves with."""
    operation: Operation
    weights: Optional[np.ndarray] = None
    sobel_x: np.ndarray = field(default_factory=lambda: SOBEL_X)
    sobel_y: np.ndarray = field(default_factory=lambda: SOBEL_Y)

    def __post_init__(self):
        # Own copies, so freezing them leaves the caller's arrays writeable.
        for name in ('weights', 'sobel_x', 'sobel_y'):
            table = getattr(self, name)
            if table is not None:
                object.__setattr__(self, name, np.array(table, dtype=np.float64, copy=True))
        if self.operation is Operation.GAUSSIAN:
            if self.weights is None:
                raise ConfigurationError("gaussian filter needs a weight table")
            validate_kernel(self.weights, normalized=True)
        validate_kernel(self.sobel_x)
        validate_kernel(self.sobel_y)
        for table in (self.weights, self.sobel_x, self.sobel_y):
            if table is not None:
                table.setflags(write=False)

    @classmethod
    def build(cls, operation, gaussian_size=DEFAULT_GAUSSIAN_SIZE, gaussian_sigma=DEFAULT_GAUSSIAN_SIGMA):
        operation = Operation(operation)
        weights = None
        if operation is Operation.GAUSSIAN:
            weights = gaussian_weights(gaussian_size, gaussian_sigma)
        return cls(operation, weights)

    @property
    def radius(self):
        if self.operation is Operation.GRAYSCALE:
            return 0
        if self.operation is Operation.GAUSSIAN:
            return self.weights.shape[0] // 2
        return self.sobel_x.shape[0] // 2

    @property
    def output_channels(self):
        return self.operation.output_channels


# --- Per-pixel kernels (reference arithmetic) ---
#
# One pixel at a time, in the accumulation order the row-block kernels below
# reproduce. The engines run the row-block kernels; these are the oracle the
# tests hold them to.

def to_byte(value):
    """Round half up, then clamp to [0, 255]."""
    return min(max(math.floor(value + 0.5), 0), 255)


def luma(r, g, b):
    return LUMA_WEIGHTS[0] * r + LUMA_WEIGHTS[1] * g + LUMA_WEIGHTS[2] * b


def grayscale_pixel(r, g, b):
    return to_byte(luma(float(r), float(g), float(b)))


def gaussian_pixel(window, weights):
    """window is a k x k x 3 neighborhood; returns the blurred (r, g, b)."""
    size = weights.shape[0]
    result = []
    for c in range(3):
        acc = 0.0
        for ky in range(size):
            for kx in range(size):
                acc += float(weights[ky, kx]) * float(window[ky][kx][c])
        result.append(to_byte(acc))
    return tuple(result)


def sobel_pixel(window, sobel_x=SOBEL_X, sobel_y=SOBEL_Y):
    size = sobel_x.shape[0]
    gx = 0.0
    gy = 0.0
    for ky in range(size):
        for kx in range(size):
            r, g, b = window[ky][kx][:3]
            gray = luma(float(r), float(g), float(b))
            gx += float(sobel_x[ky, kx]) * gray
            gy += float(sobel_y[ky, kx]) * gray
    return to_byte(math.sqrt(gx * gx + gy * gy))


def window_at(sample, y, x, radius):
    """Collect the (2r+1)^2 neighborhood of (y, x) through a sample(y, x) callable."""
    return [[sample(y + ky, x + kx) for kx in range(-radius, radius + 1)]
            for ky in range(-radius, radius + 1)]


def filter_pixel(spec, window):
    """Output value(s) of one pixel as a tuple of output_channels ints."""
    if spec.operation is Operation.GRAYSCALE:
        r, g, b = window[0][0][:3]
        return (grayscale_pixel(r, g, b),)
    if spec.operation is Operation.GAUSSIAN:
        return gaussian_pixel(window, spec.weights)
    return (sobel_pixel(window, spec.sobel_x, spec.sobel_y),)


# --- Row-block kernels (vectorized, same accumulation order as above) ---

def bytes_from(values):
    return np.clip(np.floor(values + 0.5), 0, 255).astype(np.uint8)


def luma_plane(pixels):
    rgb = pixels.astype(np.float64)
    return LUMA_WEIGHTS[0] * rgb[..., 0] + LUMA_WEIGHTS[1] * rgb[..., 1] + LUMA_WEIGHTS[2] * rgb[..., 2]


def pad_block(local, radius, top=None, bottom=None):
    """Stack halo rows around local rows and replicate the edges out to `radius`.

    Missing halo rows (global top/bottom) are filled by repeating the nearest
    row; columns are always edge-replicated.
    """
    top_rows = 0 if top is None else top.shape[0]
    bottom_rows = 0 if bottom is None else bottom.shape[0]
    if top_rows > radius or bottom_rows > radius:
        raise ValueError(f"halo deeper than radius {radius}: top={top_rows}, bottom={bottom_rows}")
    parts = [part for part in (top, local, bottom) if part is not None and part.shape[0]]
    block = np.concatenate(parts, axis=0) if len(parts) > 1 else local
    if radius == 0:
        return block
    pad = [(radius - top_rows, radius - bottom_rows), (radius, radius)]
    pad += [(0, 0)] * (block.ndim - 2)
    return np.pad(block, pad, mode='edge')


def apply_block(padded, spec):
    """Filter an edge-padded block; returns rows x width x output_channels uint8."""
    radius = spec.radius
    rows = padded.shape[0] - 2 * radius
    width = padded.shape[1] - 2 * radius

    if spec.operation is Operation.GRAYSCALE:
        return bytes_from(luma_plane(padded))[..., np.newaxis]

    if spec.operation is Operation.GAUSSIAN:
        src = padded.astype(np.float64)
        size = spec.weights.shape[0]
        acc = np.zeros((rows, width, 3), dtype=np.float64)
        for ky in range(size):
            for kx in range(size):
                acc += spec.weights[ky, kx] * src[ky:ky + rows, kx:kx + width, :3]
        return bytes_from(acc)

    gray = luma_plane(padded)
    size = spec.sobel_x.shape[0]
    gx = np.zeros((rows, width), dtype=np.float64)
    gy = np.zeros((rows, width), dtype=np.float64)
    for ky in range(size):
        for kx in range(size):
            window = gray[ky:ky + rows, kx:kx + width]
            gx += spec.sobel_x[ky, kx] * window
            gy += spec.sobel_y[ky, kx] * window
    return bytes_from(np.sqrt(gx * gx + gy * gy))[..., np.newaxis]


def filter_rows(pixels, spec, start, end):
    """Filter rows [start, end) of a full-resolution H x W x 3 image.

    Neighbor rows are read straight from `pixels`, clamped at the image edge.
    """
    height, width = pixels.shape[:2]
    if end <= start:
        return np.zeros((0, width, spec.output_channels), dtype=np.uint8)
    radius = spec.radius
    lo = max(0, start - radius)
    hi = min(height, end + radius)
    padded = pad_block(pixels[start:end], radius, top=pixels[lo:start], bottom=pixels[end:hi])
    return apply_block(padded, spec)


def filter_image(pixels, spec):
    return filter_rows(pixels, spec, 0, pixels.shape[0])
