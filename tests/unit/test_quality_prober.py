"""
Unit tests for quality_prober: pooling and the ffmpeg/libvmaf prober.

The ffmpeg process is mocked at run_cancellable.
"""

import json
import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from target_transcode.core.errors import MeasurementFailed
from target_transcode.core.modules.analysis.quality_prober import FFmpegVmafProber, pool_scores

RUN = 'target_transcode.core.modules.analysis.quality_prober.run_cancellable'


class TestPoolScores(unittest.TestCase):

    def test_mean(self):
        self.assertAlmostEqual(pool_scores([90.0, 100.0, 95.0], "mean"), 95.0)

    def test_min_is_worst_frame(self):
        self.assertEqual(pool_scores([90.0, 100.0, 70.0], "min"), 70.0)

    def test_harmonic_mean_penalises_low_outliers(self):
        scores = [99.0, 99.0, 99.0, 20.0]
        harmonic = pool_scores(scores, "harmonic_mean")

        self.assertLess(harmonic, pool_scores(scores, "mean"))
        self.assertGreater(harmonic, pool_scores(scores, "min"))
        self.assertAlmostEqual(pool_scores([50.0, 50.0], "harmonic_mean"), 50.0)

    def test_harmonic_mean_handles_zero_scores(self):
        self.assertAlmostEqual(pool_scores([0.0, 0.0], "harmonic_mean"), 0.0)

    def test_empty_scores_fail(self):
        with self.assertRaises(MeasurementFailed):
            pool_scores([], "mean")

    def test_unknown_method(self):
        with self.assertRaises(ValueError):
            pool_scores([1.0], "median")


class TestFFmpegVmafProber(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.reference = self.root / "ref.mkv"
        self.candidate = self.root / "cand.mkv"
        self.reference.write_bytes(b"ref")
        self.candidate.write_bytes(b"cand")
        self.prober = FFmpegVmafProber()

    def tearDown(self):
        self.tmp.cleanup()

    def test_command_carries_threads_subsample_and_pool(self):
        cmd = self.prober.build_command(self.reference, self.candidate, self.root / "log.json",
                                        "harmonic_mean", 4, 5)
        graph = cmd[cmd.index("-lavfi") + 1]

        self.assertIn("n_threads=4", graph)
        self.assertIn("n_subsample=5", graph)
        self.assertIn("pool=harmonic_mean", graph)
        # distorted input first, reference second
        inputs = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-i"]
        self.assertEqual(inputs, [str(self.candidate), str(self.reference)])

    @patch(RUN)
    def test_scores_pooled_from_frame_log(self, mock_run):
        def fake_run(cmd, cancel_event=None, stream="stdout"):
            log = self.candidate.with_name("cand.vmaf.json")
            log.write_text(json.dumps({"frames": [
                {"metrics": {"vmaf": 90.0}}, {"metrics": {"vmaf": 96.0}}, {"metrics": {"vmaf": 93.0}},
            ]}))
            return subprocess.CompletedProcess(cmd, 0, "", "")

        mock_run.side_effect = fake_run

        self.assertAlmostEqual(self.prober.measure(self.reference, self.candidate, "mean"), 93.0)
        self.assertEqual(self.prober.measure(self.reference, self.candidate, "min"), 90.0)
        self.assertFalse(self.candidate.with_name("cand.vmaf.json").exists())

    @patch(RUN)
    def test_falls_back_to_printed_score(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess([], 0, "", "[libvmaf] VMAF score: 95.123\n")

        self.assertAlmostEqual(self.prober.measure(self.reference, self.candidate), 95.123)

    @patch(RUN)
    def test_non_zero_exit_fails(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess([], 1, "", "Error initializing filter\n")

        with self.assertRaises(MeasurementFailed) as ctx:
            self.prober.measure(self.reference, self.candidate)
        self.assertIn("Error initializing filter", str(ctx.exception))

    @patch(RUN)
    def test_unparsable_output_fails(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess([], 0, "", "nothing useful\n")

        with self.assertRaises(MeasurementFailed):
            self.prober.measure(self.reference, self.candidate)

    @patch(RUN)
    def test_empty_candidate_fails_without_running(self, mock_run):
        self.candidate.write_bytes(b"")

        with self.assertRaises(MeasurementFailed):
            self.prober.measure(self.reference, self.candidate)
        mock_run.assert_not_called()

    def test_invalid_arguments(self):
        with self.assertRaises(ValueError):
            self.prober.measure(self.reference, self.candidate, thread_count=0)
        with self.assertRaises(ValueError):
            self.prober.measure(self.reference, self.candidate, subsample_stride=0)
        with self.assertRaises(ValueError):
            self.prober.measure(self.reference, self.candidate, pool_method="median")

    def test_missing_ffmpeg_is_measurement_failure(self):
        prober = FFmpegVmafProber(ffmpeg=str(self.root / "no-ffmpeg"))

        with self.assertRaises(MeasurementFailed) as ctx:
            prober.measure(self.reference, self.candidate)
        self.assertIsInstance(ctx.exception.__cause__, OSError)
        self.assertFalse(self.candidate.with_name("cand.vmaf.json").exists())


if __name__ == '__main__':
    unittest.main()
