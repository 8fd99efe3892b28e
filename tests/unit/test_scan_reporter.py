"""
Unit tests for the Scan Reporter and its process-wide counter.
"""

import os
import tempfile
import unittest
from pathlib import Path

from target_transcode.core.modules.processing.scan_reporter import (
    ScanProgress, ScanReporter, SourceFilter, get_scan_progress, is_media_file, is_transcode_artifact
)


class TestScanProgress(unittest.TestCase):

    def test_counter_and_payload(self):
        progress = ScanProgress()
        progress.increment()
        progress.increment()

        self.assertEqual(progress.as_dict(), {"count": 2, "total": 2})
        progress.reset()
        self.assertEqual(progress.total, 0)

    def test_process_wide_instance(self):
        self.assertIs(get_scan_progress(), get_scan_progress())


class TestScanReporter(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        (self.root / "season1").mkdir()
        (self.root / "season1" / "nested").mkdir()
        for rel in ("a.mkv", "b.MP4", "notes.txt", ".hidden.mkv", "._a.mkv",
                    "season1/c.webm", "season1/d.srt", "season1/nested/e.ts"):
            (self.root / rel).write_bytes(b"x")
        self.progress = ScanProgress()
        self.reporter = ScanReporter(progress=self.progress)

    def tearDown(self):
        self.tmp.cleanup()

    def test_only_media_extensions_found(self):
        names = sorted(p.name for p in self.reporter.scan(self.root))

        self.assertEqual(names, ["a.mkv", "b.MP4", "c.webm", "e.ts"])
        self.assertEqual(self.progress.total, 4)

    def test_counter_strictly_increases_while_scanning(self):
        seen = []
        for _ in self.reporter.scan(self.root):
            seen.append(self.progress.total)

        self.assertEqual(seen, [1, 2, 3, 4])

    def test_scan_is_lazy_and_restartable(self):
        scan = self.reporter.scan(self.root)
        self.assertEqual(self.progress.total, 0)

        first = list(scan)
        second = list(scan)
        self.assertEqual(first, second)
        self.assertEqual(self.progress.total, len(second))

    def test_cyclic_symlink_not_followed_twice(self):
        try:
            os.symlink(self.root, self.root / "season1" / "loop", target_is_directory=True)
        except (OSError, NotImplementedError):
            self.skipTest("symlinks not supported")

        found = list(self.reporter.scan(self.root))

        self.assertEqual(len(found), 4)
        self.assertEqual(self.progress.total, 4)

    def test_symlinked_file_counted_once(self):
        try:
            os.symlink(self.root / "a.mkv", self.root / "season1" / "alias.mkv")
        except (OSError, NotImplementedError):
            self.skipTest("symlinks not supported")

        self.assertEqual(len(list(self.reporter.scan(self.root))), 4)

    def test_single_file_root(self):
        self.assertEqual(list(self.reporter.scan(self.root / "a.mkv")), [self.root / "a.mkv"])

    def test_missing_root(self):
        with self.assertRaises(ValueError):
            list(self.reporter.scan(self.root / "missing"))

    def test_own_outputs_and_part_files_not_rediscovered(self):
        for name in ("a.libx265.vmaf97.mean.subsample1.mkv",
                     "b.libx265.vmaf97.mean.subsample1.part.mkv",
                     "b.av1_qsv.vmaf95.5.harmonic_mean.subsample5.mp4",
                     "c.part.mkv"):
            (self.root / name).write_bytes(b"x")

        names = sorted(p.name for p in self.reporter.scan(self.root))

        self.assertEqual(names, ["a.mkv", "b.MP4", "c.webm", "e.ts"])

    def test_hidden_and_scratch_directories_pruned(self):
        for rel in (".trash/old.mkv", "target_transcode_abc123/chunk_0000.src.mkv",
                    "target_transcode_abc123/search/candidate_q14.mkv"):
            (self.root / rel).parent.mkdir(parents=True, exist_ok=True)
            (self.root / rel).write_bytes(b"x")

        names = sorted(p.name for p in self.reporter.scan(self.root))

        self.assertEqual(names, ["a.mkv", "b.MP4", "c.webm", "e.ts"])

    def test_is_media_file(self):
        self.assertTrue(is_media_file(Path("x.MKV")))
        self.assertFalse(is_media_file(Path("x.nfo")))
        self.assertFalse(is_media_file(Path(".x.mkv")))

    def test_transcode_artifacts(self):
        self.assertTrue(is_transcode_artifact(Path("Movie.hevc_nvenc.vmaf97.min.subsample1.mkv")))
        self.assertTrue(is_transcode_artifact(Path("Movie.Part.mkv")))
        self.assertTrue(is_transcode_artifact(Path("candidate_q7.mkv")))
        self.assertTrue(is_transcode_artifact(Path("sample_clip_003.mkv")))
        # Titles that merely resemble outputs stay
        self.assertFalse(is_transcode_artifact(Path("Movie.Part.2.mkv")))
        self.assertFalse(is_transcode_artifact(Path("Movie.x265.mkv")))
        self.assertFalse(is_transcode_artifact(Path("Movie.libx265.vmaf97.median.subsample1.mkv")))


class TestSourceFilter(unittest.TestCase):

    def make_filter(self, codecs, bitrates, **kwargs):
        return SourceFilter(codec_of=lambda p: codecs.get(p.name),
                            bitrate_of=lambda p: bitrates.get(p.name, 0.0), **kwargs)

    def test_efficient_codec_and_low_bitrate_skipped(self):
        source_filter = self.make_filter(
            codecs={"a.mkv": "h264", "b.mkv": "hevc", "c.mkv": "h264", "d.mkv": None},
            bitrates={"a.mkv": 12000.0, "b.mkv": 12000.0, "c.mkv": 1500.0})
        paths = [Path(n) for n in ("a.mkv", "b.mkv", "c.mkv", "d.mkv")]

        keep, skipped = source_filter.split(paths)

        self.assertEqual(keep, [Path("a.mkv"), Path("d.mkv")])
        self.assertEqual([(p.name, reason.split()[0]) for p, reason in skipped],
                         [("b.mkv", "already"), ("c.mkv", "bitrate")])

    def test_checks_can_be_disabled(self):
        source_filter = self.make_filter(codecs={"b.mkv": "av1"}, bitrates={"b.mkv": 100.0},
                                         skip_codecs=(), min_bitrate_kbps=0)

        self.assertIsNone(source_filter.skip_reason(Path("b.mkv")))


if __name__ == '__main__':
    unittest.main()
