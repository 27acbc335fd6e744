"""Comparison charts across engines.

Reads `<results_dir>/output_<engine>/timings.json` for every engine that has
run and plots phase totals, per-image processing time and speedup over the
sequential baseline.
"""
import argparse
import logging
import os
import sys

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from config import ENGINES, TIMINGS_FILENAME, setup_logging
from timings import read_timings

logger = logging.getLogger(__name__)

BASELINE = 'sequential'
PHASES = (('Loading', 'total_loading_time'),
          ('Processing', 'total_processing_time'),
          ('Exporting', 'total_exporting_time'))


def results_path(results_dir, engine):
    return os.path.join(results_dir, f"output_{engine}", TIMINGS_FILENAME)


def load_results(results_dir, engines=ENGINES):
    """Engine -> TimingReport for each engine whose timings.json exists."""
    results = {}
    for engine in engines:
        path = results_path(results_dir, engine)
        if os.path.isfile(path):
            results[engine] = read_timings(path, engine=engine)
        else:
            logger.debug("No results for %s at %s", engine, path)
    return results


def speedups(results, baseline=BASELINE):
    """Processing speedup of every engine over the baseline; {} without a baseline."""
    base = results.get(baseline)
    if base is None or base.total_processing_time <= 0:
        return {}
    return {engine: base.total_processing_time / report.total_processing_time
            for engine, report in results.items() if report.total_processing_time > 0}


def average_io(results):
    """Mean per-engine total load and export time, in ms."""
    if not results:
        return 0.0, 0.0
    load = sum(r.total_loading_time for r in results.values()) / len(results)
    export = sum(r.total_exporting_time for r in results.values()) / len(results)
    return load, export


# ============================================================
# CHARTS
# ============================================================

def plot_phase_totals(results, filename):
    engines = list(results)
    bottom = [0.0] * len(engines)
    plt.figure(figsize=(8, 6))
    for label, attr in PHASES:
        values = [getattr(results[e], attr) for e in engines]
        plt.bar(engines, values, bottom=bottom, label=label)
        bottom = [b + v for b, v in zip(bottom, values)]
    plt.xlabel('Engine')
    plt.ylabel('Time (ms)')
    plt.title('Total Time per Phase')
    plt.legend()
    plt.grid(True, axis='y', linestyle='--', alpha=0.7)
    plt.savefig(filename, dpi=300, bbox_inches='tight')
    plt.close()


def plot_process_per_image(results, filename):
    markers = ['o', 's', '^', 'D']
    plt.figure(figsize=(9, 6))
    for i, (engine, report) in enumerate(results.items()):
        names = [t.image_name for t in report.images]
        plt.plot(names, [t.process_ms for t in report.images],
                 marker=markers[i % len(markers)], label=engine)
    plt.xlabel('Image')
    plt.ylabel('Processing Time (ms)')
    plt.title('Processing Time per Image')
    plt.xticks(rotation=45, ha='right')
    plt.legend()
    plt.grid(True)
    plt.savefig(filename, dpi=300, bbox_inches='tight')
    plt.close()


def plot_speedup(speedup, filename):
    engines = list(speedup)
    plt.figure(figsize=(8, 6))
    plt.bar(engines, [speedup[e] for e in engines])
    plt.axhline(1.0, color='k', linestyle='--', alpha=0.3, label='Sequential baseline')
    plt.xlabel('Engine')
    plt.ylabel('Speedup (x)')
    plt.title('Processing Speedup vs Sequential')
    plt.legend()
    plt.grid(True, axis='y')
    plt.savefig(filename, dpi=300, bbox_inches='tight')
    plt.close()


def generate_charts(results, out_dir):
    """Write every chart that the available results support; returns their paths."""
    os.makedirs(out_dir, exist_ok=True)
    written = []
    if not results:
        return written

    path = os.path.join(out_dir, 'phase_totals.png')
    plot_phase_totals(results, path)
    written.append(path)

    path = os.path.join(out_dir, 'process_per_image.png')
    plot_process_per_image(results, path)
    written.append(path)

    speedup = speedups(results)
    if speedup:
        path = os.path.join(out_dir, 'speedup_vs_sequential.png')
        plot_speedup(speedup, path)
        written.append(path)
    return written


def main(argv=None):
    parser = argparse.ArgumentParser(description="Plot engine comparison charts.")
    parser.add_argument('results_dir', help="folder holding output_<engine>/timings.json")
    parser.add_argument('--out', default=None, help="chart folder (default: results_dir)")
    args = parser.parse_args(argv)
    setup_logging()

    results = load_results(args.results_dir)
    if not results:
        logger.error("No timings.json found under %s", args.results_dir)
        return 1
    for path in generate_charts(results, args.out or args.results_dir):
        logger.info("- %s", path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
