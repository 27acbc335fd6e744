"""CUDA engine: one device thread per output pixel.

Kernels read a flat interleaved RGB buffer and write a flat output buffer of
width * height * output_channels bytes. Edge pixels clamp their neighbor
coordinates exactly like the host engines. The Gaussian and Sobel tables are
baked into constant memory when the run's kernel is compiled, so they reach
the device once per run. Device buffers are allocated once, at the size of the
largest image in the batch, and reused for every image.

Arithmetic on the device is float32, so outputs may differ from the host
engines by one intensity level where a value lands next to a rounding edge.
"""
import logging
import math
import sys

import config  # noqa: F401  pins BLAS threads before numpy loads
import numpy as np
from numba import cuda, float32

from errors import ConfigurationError
from filters import LUMA_WEIGHTS, FilterSpec, Operation
from images import list_inputs, load_batch, output_path, save_image
from timings import Stopwatch, TimingReport

logger = logging.getLogger(__name__)

ENGINE = 'cuda'

LUMA_R, LUMA_G, LUMA_B = LUMA_WEIGHTS


# ==============================================================================
# DEVICE FUNCTIONS
# ==============================================================================

@cuda.jit(device=True)
def clamp_index(value, low, high):
    if value < low:
        return low
    if value > high:
        return high
    return value


@cuda.jit(device=True)
def to_byte(value):
    v = math.floor(value + 0.5)
    if v < 0:
        return 0
    if v > 255:
        return 255
    return v


@cuda.jit(device=True)
def luma_at(src, i):
    return LUMA_R * src[i] + LUMA_G * src[i + 1] + LUMA_B * src[i + 2]


# ==============================================================================
# KERNELS
# ==============================================================================

@cuda.jit
def grayscale_kernel(src, dst, width, height):
    x, y = cuda.grid(2)
    if x < width and y < height:
        p = y * width + x
        dst[p] = to_byte(luma_at(src, p * 3))


def build_kernel(spec):
    """Compile the kernel for `spec`; stencil tables become constant memory."""
    if spec.operation is Operation.GRAYSCALE:
        return grayscale_kernel

    radius = spec.radius

    if spec.operation is Operation.GAUSSIAN:
        weights = np.ascontiguousarray(spec.weights, dtype=np.float32)
        size = weights.shape[0]

        @cuda.jit
        def gaussian_kernel(src, dst, width, height):
            table = cuda.const.array_like(weights)
            x, y = cuda.grid(2)
            if x < width and y < height:
                r = float32(0.0)
                g = float32(0.0)
                b = float32(0.0)
                for ky in range(size):
                    ny = clamp_index(y + ky - radius, 0, height - 1)
                    for kx in range(size):
                        nx = clamp_index(x + kx - radius, 0, width - 1)
                        i = (ny * width + nx) * 3
                        k = table[ky, kx]
                        r += k * float32(src[i])
                        g += k * float32(src[i + 1])
                        b += k * float32(src[i + 2])
                o = (y * width + x) * 3
                dst[o] = to_byte(r)
                dst[o + 1] = to_byte(g)
                dst[o + 2] = to_byte(b)

        return gaussian_kernel

    sobel_x = np.ascontiguousarray(spec.sobel_x, dtype=np.float32)
    sobel_y = np.ascontiguousarray(spec.sobel_y, dtype=np.float32)
    size = sobel_x.shape[0]

    @cuda.jit
    def sobel_kernel(src, dst, width, height):
        table_x = cuda.const.array_like(sobel_x)
        table_y = cuda.const.array_like(sobel_y)
        x, y = cuda.grid(2)
        if x < width and y < height:
            gx = float32(0.0)
            gy = float32(0.0)
            for ky in range(size):
                ny = clamp_index(y + ky - radius, 0, height - 1)
                for kx in range(size):
                    nx = clamp_index(x + kx - radius, 0, width - 1)
                    gray = float32(luma_at(src, (ny * width + nx) * 3))
                    gx += table_x[ky, kx] * gray
                    gy += table_y[ky, kx] * gray
            dst[y * width + x] = to_byte(math.sqrt(gx * gx + gy * gy))

    return sobel_kernel


# ==============================================================================
# HOST SIDE
# ==============================================================================

class DeviceBuffers:
    """Input and output device allocations sized for the largest image."""

    def __init__(self, input_nbytes, output_nbytes):
        self.src = cuda.device_array(max(input_nbytes, 1), dtype=np.uint8)
        self.dst = cuda.device_array(max(output_nbytes, 1), dtype=np.uint8)

    @classmethod
    def for_batch(cls, jobs):
        return cls(max(job.input_nbytes for job in jobs),
                   max(job.output_nbytes for job in jobs))


def grid_for(width, height, block):
    bx, by = block
    return ((width + bx - 1) // bx, (height + by - 1) // by)


def warm_up(kernel, buffers):
    """Compile the kernel before any image's timing window opens."""
    kernel[(1, 1), (1, 1)](buffers.src, buffers.dst, 0, 0)
    cuda.synchronize()


def process_on_device(job, kernel, buffers, block):
    """Copy in, launch, copy out; returns elapsed device time in ms."""
    start = cuda.event()
    stop = cuda.event()
    start.record()
    buffers.src[:job.input_nbytes].copy_to_device(job.pixels.reshape(-1))
    kernel[grid_for(job.width, job.height, block), block](
        buffers.src, buffers.dst, job.width, job.height)
    buffers.dst[:job.output_nbytes].copy_to_host(job.output.reshape(-1))
    stop.record()
    stop.synchronize()
    return start.elapsed_time(stop)


def run(cfg):
    if not cuda.is_available():
        raise ConfigurationError("No CUDA device available for the cuda engine")

    spec = FilterSpec.build(cfg.operation, cfg.gaussian_size, cfg.gaussian_sigma)
    paths = list_inputs(cfg.input_dir, cfg.output_dir)
    report = TimingReport(ENGINE, cfg.operation)
    block = tuple(cfg.block)

    loaded = load_batch(paths, spec.output_channels)
    if not loaded:
        return report

    kernel = build_kernel(spec)
    buffers = DeviceBuffers.for_batch([job for job, _ in loaded])
    warm_up(kernel, buffers)
    logger.info("Launching %s kernel with %dx%d thread blocks", spec.operation.value, *block)

    try:
        for job, timing in loaded:
            timing.process_ms = process_on_device(job, kernel, buffers, block)
            logger.debug("%s: device time %.4f ms", timing.image_name, timing.process_ms)

        for job, timing in loaded:
            with Stopwatch() as sw:
                save_image(job.output, output_path(cfg.output_dir, job, cfg.operation, cfg.keep_extension))
            timing.export_ms = sw.ms
            job.release()
            report.add(timing)
    finally:
        for job, _ in loaded:
            job.release()
    return report


if __name__ == "__main__":
    import main
    sys.exit(main.main(engine=ENGINE))
