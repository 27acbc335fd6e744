import json
import unittest

from timings import ImageTiming, Stopwatch, TimingReport, escape_name, format_timings, read_timings, write_timings


class TestTimingsDocument(unittest.TestCase):
    def setUp(self):
        self.report = TimingReport('sequential', 'sobel', [
            ImageTiming('a.jpg', 1.0, 2.5, 0.25),
            ImageTiming('b "quoted" \\ name.png', 3.12346, 4.0, 0.75),
        ])

    def test_totals(self):
        self.assertAlmostEqual(self.report.total_loading_time, 4.12346)
        self.assertAlmostEqual(self.report.total_processing_time, 6.5)
        self.assertAlmostEqual(self.report.total_exporting_time, 1.0)

    def test_fixed_four_decimals(self):
        text = format_timings(self.report)
        self.assertIn('"total_loading_time": 4.1235,', text)
        self.assertIn('"total_processing_time": 6.5000,', text)
        self.assertIn('"load_ms": 1.0000,', text)
        self.assertIn('"export_ms": 0.2500', text)

    def test_document_is_valid_json(self):
        data = json.loads(format_timings(self.report))
        self.assertEqual(set(data), {'total_loading_time', 'total_processing_time',
                                     'total_exporting_time', 'individual_image_times'})
        names = [entry['image_name'] for entry in data['individual_image_times']]
        self.assertEqual(names, ['a.jpg', 'b "quoted" \\ name.png'])

    def test_empty_report(self):
        data = json.loads(format_timings(TimingReport('cuda', 'gaussian')))
        self.assertEqual(data['individual_image_times'], [])
        self.assertEqual(data['total_processing_time'], 0.0)


def test_escape_name():
    assert escape_name('plain.png') == 'plain.png'
    assert escape_name('a"b') == 'a\\"b'
    assert escape_name('c\\d') == 'c\\\\d'


def test_write_and_read_back(tmp_path):
    report = TimingReport('openmp', 'grayscale', [ImageTiming('x.png', 0.5, 1.5, 2.5)])
    path = write_timings(report, str(tmp_path))
    assert path.endswith('timings.json')
    loaded = read_timings(path, engine='openmp')
    assert loaded.engine == 'openmp'
    assert loaded.images == report.images


def test_stopwatch_measures_milliseconds():
    with Stopwatch() as sw:
        sum(range(1000))
    assert sw.ms >= 0.0
