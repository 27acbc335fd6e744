"""Per-image stage timings and the timings.json document every engine writes.

Timing contract
---------------
load_ms and export_ms are host wall-clock time around decode and encode.
process_ms is host wall-clock time around the filter pass for the sequential
and openmp engines. For the mpi engine it covers everything from the size
broadcast through the final gather, measured on rank 0. For the cuda engine it
is device time between CUDA events recorded before copy-in and after
copy-out, which excludes host-side dispatch overhead. Compare cuda process
times with that in mind.
"""
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import List

from config import TIMINGS_FILENAME


class Stopwatch:
    """`with Stopwatch() as sw: ...` then read `sw.ms`."""

    def __init__(self):
        self.ms = 0.0
        self._start = None

    def __enter__(self):
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.ms = (time.perf_counter() - self._start) * 1000.0
        return False


@dataclass
class ImageTiming:
    image_name: str
    load_ms: float = 0.0
    process_ms: float = 0.0
    export_ms: float = 0.0


@dataclass
class TimingReport:
    engine: str = ''
    operation: str = ''
    images: List[ImageTiming] = field(default_factory=list)

    def add(self, timing):
        self.images.append(timing)

    @property
    def total_loading_time(self):
        return sum(t.load_ms for t in self.images)

    @property
    def total_processing_time(self):
        return sum(t.process_ms for t in self.images)

    @property
    def total_exporting_time(self):
        return sum(t.export_ms for t in self.images)


def escape_name(name):
    return name.replace('\\', '\\\\').replace('"', '\\"')


def format_timings(report):
    """Render the timings document with fixed 4-decimal numbers."""
    lines = [
        "{",
        f'  "total_loading_time": {report.total_loading_time:.4f},',
        f'  "total_processing_time": {report.total_processing_time:.4f},',
        f'  "total_exporting_time": {report.total_exporting_time:.4f},',
        '  "individual_image_times": [',
    ]
    for i, t in enumerate(report.images):
        lines.append("    {")
        lines.append(f'      "image_name": "{escape_name(t.image_name)}",')
        lines.append(f'      "load_ms": {t.load_ms:.4f},')
        lines.append(f'      "process_ms": {t.process_ms:.4f},')
        lines.append(f'      "export_ms": {t.export_ms:.4f}')
        lines.append("    }" + ("," if i + 1 < len(report.images) else ""))
    lines.append("  ]")
    lines.append("}")
    return "\n".join(lines) + "\n"


def write_timings(report, output_dir):
    path = os.path.join(output_dir, TIMINGS_FILENAME)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(format_timings(report))
    return path


def read_timings(path, engine='', operation=''):
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    images = [ImageTiming(d['image_name'], float(d['load_ms']),
                          float(d['process_ms']), float(d['export_ms']))
              for d in data.get('individual_image_times', [])]
    return TimingReport(engine, operation, images)


def log_summary(report, log=None):
    log = log or logging.getLogger(__name__)
    count = len(report.images)
    log.info("=" * 60)
    log.info("%s %s: %d image(s)", report.engine.upper(), report.operation, count)
    log.info("=" * 60)
    log.info("Total loading time:    %10.4f ms", report.total_loading_time)
    log.info("Total processing time: %10.4f ms", report.total_processing_time)
    log.info("Total exporting time:  %10.4f ms", report.total_exporting_time)
    if count:
        log.info("Average processing time per image: %.4f ms", report.total_processing_time / count)
