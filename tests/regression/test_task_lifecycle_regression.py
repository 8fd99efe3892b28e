"""
Task Lifecycle Regression Tests

End-to-end runs of the Scheduler with the real TaskRunner, CRF search and
chunk pipeline, using fake encode/measure capabilities. These guard:
- Cancellation reclaiming every task-namespaced temp file before returning
- A failing chunk failing the whole task without a final artifact
- Default-mode output written only on success
"""

import functools
import tempfile
import unittest
from pathlib import Path

from target_transcode.core.modules.optimization.sampling import FullInputSampler
from target_transcode.core.modules.optimization.scene_splitter import SceneSplitter
from target_transcode.core.modules.processing.chunk_pipeline import ChunkPipeline
from target_transcode.core.modules.queue.scheduler import Scheduler
from target_transcode.core.modules.queue.task import TaskConfig, TaskStatus
from target_transcode.core.modules.queue.task_runner import TaskRunner
from target_transcode.core.modules.system.system_utils import WORKDIR_PREFIX
from tests.fakes import FakeEncodeRunner, FakeProber


def fake_extract(input_path, output_path, start, end, cancel_event=None):
    output_path.write_text(f"{start}-{end}")
    return output_path


def fake_concat(paths, output_file, streams_source=None, cancel_event=None):
    output_file.write_text(",".join(p.name for p in paths))
    return output_file


class LifecycleTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.temp_root = self.root / "scratch"
        self.temp_root.mkdir()
        self.input = self.root / "movie.mkv"
        self.input.write_bytes(b"source")
        self.scheduler = None

    def tearDown(self):
        if self.scheduler is not None:
            self.scheduler.shutdown()
        self.tmp.cleanup()

    def make_scheduler(self, encoder, score_fn=lambda q: 100 - q, frame_probe=lambda p: 100):
        self.encoder = encoder
        splitter = SceneSplitter(detector=lambda p, cancel_event=None: [10.0, 20.0],
                                 duration_probe=lambda p: 30.0)
        runner = TaskRunner(
            encoder, FakeProber(score_fn), sampler=FullInputSampler(), splitter=splitter,
            max_chunk_workers=3, frame_probe=frame_probe, temp_root=self.temp_root,
            pipeline_factory=functools.partial(ChunkPipeline, segment_extractor=fake_extract,
                                               concatenate=fake_concat, fps_probe=lambda p: 24.0),
        )
        self.scheduler = Scheduler(runner, max_concurrent=1)
        return self.scheduler

    def config(self, **kwargs) -> TaskConfig:
        return TaskConfig(input_path=self.input, vmaf_threads=1, **kwargs)

    def leftovers(self):
        return [p for p in self.temp_root.iterdir() if p.name.startswith(WORKDIR_PREFIX)]


class TestDefaultModeRegression(LifecycleTestCase):

    def test_search_then_full_encode(self):
        scheduler = self.make_scheduler(FakeEncodeRunner())
        task = scheduler.submit(self.config(), task_id="movie")
        scheduler.wait("movie", timeout=10)

        summary = scheduler.get("movie")
        self.assertEqual(summary.status, TaskStatus.COMPLETED)
        self.assertEqual(summary.quality_param, 3)
        self.assertEqual(task.config.output_path.read_text(), "3")
        self.assertTrue(self.encoder.calls[-1]["copy_streams"])
        self.assertEqual(self.leftovers(), [])
        self.assertEqual(scheduler.progress("movie").percentage, 100.0)

    def test_unreachable_target_completes_with_warning(self):
        scheduler = self.make_scheduler(FakeEncodeRunner(), score_fn=lambda q: 40.0)
        scheduler.submit(self.config(), task_id="hard")
        scheduler.wait("hard", timeout=10)

        summary = scheduler.get("hard")
        self.assertEqual(summary.status, TaskStatus.COMPLETED)
        self.assertEqual(summary.quality_param, 0)
        self.assertIn("not reached", summary.warning)

    def test_cancel_removes_all_task_files(self):
        scheduler = self.make_scheduler(FakeEncodeRunner(block_on=lambda p: True))
        task = scheduler.submit(self.config(), task_id="cancel-me")
        self.assertTrue(self.encoder.started.wait(5))
        self.assertNotEqual(self.leftovers(), [])

        status = scheduler.cancel("cancel-me", timeout=10)

        self.assertEqual(status, TaskStatus.CANCELLED)
        self.assertEqual(self.leftovers(), [])
        self.assertFalse(task.config.output_path.exists())
        self.assertEqual([p.name for p in self.root.iterdir() if ".part" in p.name], [])

    def test_failed_frame_probe_removes_workdir(self):
        def broken_probe(path):
            raise RuntimeError("ffprobe crashed")

        scheduler = self.make_scheduler(FakeEncodeRunner(), frame_probe=broken_probe)
        scheduler.submit(self.config(), task_id="probe-fails")
        scheduler.wait("probe-fails", timeout=10)

        summary = scheduler.get("probe-fails")
        self.assertEqual(summary.status, TaskStatus.FAILED)
        self.assertIn("ffprobe crashed", summary.error)
        self.assertEqual(self.leftovers(), [])
        self.assertEqual(self.encoder.calls, [])


class TestChunkedModeRegression(LifecycleTestCase):

    def test_chunked_task_completes(self):
        scheduler = self.make_scheduler(FakeEncodeRunner())
        task = scheduler.submit(self.config(mode="chunked", fixed_quality=22), task_id="chunks")
        scheduler.wait("chunks", timeout=10)

        self.assertEqual(scheduler.get("chunks").status, TaskStatus.COMPLETED)
        self.assertEqual(task.config.output_path.read_text(),
                         "chunk_0000.mkv,chunk_0001.mkv,chunk_0002.mkv")
        self.assertEqual(self.leftovers(), [])

    def test_failing_chunk_fails_task_without_artifact(self):
        encoder = FakeEncodeRunner(
            delays={"chunk_0001.src.mkv": 0.1},
            fail_on=lambda p: p.name == "chunk_0001.src.mkv",
            block_on=lambda p: p.name in ("chunk_0000.src.mkv", "chunk_0002.src.mkv"),
        )
        scheduler = self.make_scheduler(encoder)
        task = scheduler.submit(self.config(mode="chunked", fixed_quality=22), task_id="broken")
        scheduler.wait("broken", timeout=10)

        summary = scheduler.get("broken")
        self.assertEqual(summary.status, TaskStatus.FAILED)
        self.assertIn("Chunk 1", summary.error)
        self.assertEqual(sorted(p.name for p in encoder.cancelled),
                         ["chunk_0000.src.mkv", "chunk_0002.src.mkv"])
        self.assertFalse(task.config.output_path.exists())
        self.assertEqual(self.leftovers(), [])


if __name__ == '__main__':
    unittest.main()
