import argparse
import logging
import os
import sys

from reportlab.lib import colors
from reportlab.lib.pagesizes import LETTER
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Image, PageBreak, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from charts import average_io, generate_charts, load_results, speedups
from config import setup_logging

logger = logging.getLogger(__name__)

TABLE_STYLE = TableStyle([
    ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor("#404040")),
    ('TEXTCOLOR', (0, 0), (-1, 0), colors.whitesmoke),
    ('ALIGN', (0, 0), (-1, -1), 'CENTER'),
    ('GRID', (0, 0), (-1, -1), 1, colors.black),
    ('BACKGROUND', (0, 1), (-1, -1), colors.whitesmoke),
])


def summary_rows(results):
    """Header plus one row per engine: phase totals (ms) and speedup."""
    speedup = speedups(results)
    rows = [['Engine', 'Images', 'Load (ms)', 'Process (ms)', 'Export (ms)', 'Speedup']]
    for engine, report in results.items():
        rows.append([
            engine,
            len(report.images),
            f"{report.total_loading_time:.2f}",
            f"{report.total_processing_time:.2f}",
            f"{report.total_exporting_time:.2f}",
            f"{speedup[engine]:.2f}x" if engine in speedup else "-",
        ])
    return rows


def per_image_rows(results):
    """Processing time of each image under each engine; images matched by name."""
    engines = list(results)
    names = []
    for report in results.values():
        for timing in report.images:
            if timing.image_name not in names:
                names.append(timing.image_name)
    lookup = {e: {t.image_name: t.process_ms for t in results[e].images} for e in engines}
    rows = [['Image'] + engines]
    for name in names:
        rows.append([name] + [f"{lookup[e][name]:.2f}" if name in lookup[e] else "-" for e in engines])
    return rows


def styled_table(rows):
    table = Table(rows, repeatRows=1)
    table.setStyle(TABLE_STYLE)
    return table


def create_pdf(results, filename, chart_dir):
    charts = generate_charts(results, chart_dir)

    doc = SimpleDocTemplate(filename, pagesize=LETTER)
    styles = getSampleStyleSheet()
    h1, h2, normal = styles['Heading1'], styles['Heading2'], styles['Normal']
    story = []

    story.append(Paragraph("Parallel Image Filtering Report", styles['Title']))
    story.append(Spacer(1, 0.3 * inch))
    story.append(Paragraph(f"Engines compared: {', '.join(results)}", normal))
    load, export = average_io(results)
    story.append(Paragraph(f"Average total load time: <b>{load:.2f} ms</b>", normal))
    story.append(Paragraph(f"Average total export time: <b>{export:.2f} ms</b>", normal))
    story.append(Spacer(1, 0.2 * inch))

    story.append(Paragraph("1. Summary", h1))
    story.append(styled_table(summary_rows(results)))
    story.append(Spacer(1, 15))

    story.append(Paragraph("2. Processing Time per Image", h2))
    story.append(styled_table(per_image_rows(results)))

    if charts:
        story.append(PageBreak())
        story.append(Paragraph("3. Charts", h1))
        for path in charts:
            story.append(Image(path, width=6 * inch, height=4.5 * inch))
            story.append(Spacer(1, 10))

    doc.build(story)
    return filename


def main(argv=None):
    parser = argparse.ArgumentParser(description="Build a PDF comparing engine timings.")
    parser.add_argument('results_dir', help="folder holding output_<engine>/timings.json")
    parser.add_argument('-o', '--output', default=None, help="PDF path (default: results_dir/report.pdf)")
    args = parser.parse_args(argv)
    setup_logging()

    results = load_results(args.results_dir)
    if not results:
        logger.error("No timings.json found under %s", args.results_dir)
        return 1
    filename = args.output or os.path.join(args.results_dir, 'report.pdf')
    create_pdf(results, filename, os.path.dirname(os.path.abspath(filename)))
    logger.info("PDF successfully generated: %s", filename)
    return 0


if __name__ == "__main__":
    sys.exit(main())
