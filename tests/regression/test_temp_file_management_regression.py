"""
Temp File Management Regression Tests

These tests prevent bugs in temporary file handling that could cause:
- Disk space exhaustion from sample, candidate and chunk files left behind
- Collisions between concurrently running tasks
- Registry entries outliving the files they track

Every task works inside its own namespaced workdir; removing it must reclaim everything.
"""

import tempfile
import threading
import unittest
from pathlib import Path

from target_transcode.core.modules.system.system_utils import (
    TEMP_FILES, cleanup_temp_files, make_task_workdir, remove_path, temporary_file
)


class TestTempFileRegistrationRegression(unittest.TestCase):
    """TEMP_FILES must track every temporary path until it is removed."""

    def setUp(self):
        TEMP_FILES.clear()

    def tearDown(self):
        cleanup_temp_files()

    def test_temp_file_registry_tracks_created_files(self):
        with temporary_file(suffix=".tmp") as temp_file:
            self.assertIn(str(temp_file), TEMP_FILES)
        self.assertNotIn(str(temp_file), TEMP_FILES)

    def test_temp_file_removed_when_block_raises(self):
        with self.assertRaises(RuntimeError):
            with temporary_file(suffix=".mkv") as temp_file:
                temp_file.write_text("partial")
                raise RuntimeError("encode crashed")
        self.assertFalse(temp_file.exists())

    def test_cleanup_is_idempotent(self):
        with temporary_file() as temp_file:
            self.assertTrue(remove_path(temp_file))
            self.assertFalse(remove_path(temp_file))
        self.assertEqual(len(TEMP_FILES), 0)

    def test_registry_thread_safety(self):
        paths = [f"/tmp/target_transcode_thread_{i}.tmp" for i in range(200)]

        def register(chunk):
            for p in chunk:
                TEMP_FILES.add(p)

        threads = [threading.Thread(target=register, args=(paths[i::4],)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(TEMP_FILES), 200)
        TEMP_FILES.clear()


class TestTaskWorkdirRegression(unittest.TestCase):
    """Per-task workdirs must be unique per task and fully removable."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_workdirs_namespaced_by_task_id(self):
        a = make_task_workdir("task-a", self.root)
        b = make_task_workdir("task-b", self.root)

        self.assertNotEqual(a, b)
        self.assertIn("task-a", a.name)
        self.assertIn(str(a), TEMP_FILES)

    def test_unsafe_ids_sanitised(self):
        workdir = make_task_workdir("../../etc/passwd", self.root)

        self.assertEqual(workdir.parent, self.root)

    def test_removing_workdir_reclaims_nested_files(self):
        workdir = make_task_workdir("nested", self.root)
        (workdir / "chunk_0000").mkdir()
        (workdir / "chunk_0000" / "candidate_q14.mkv").write_bytes(b"x")
        (workdir / "chunk_0000.src.mkv").write_bytes(b"x")

        self.assertTrue(remove_path(workdir))
        self.assertFalse(workdir.exists())
        self.assertNotIn(str(workdir), TEMP_FILES)


if __name__ == '__main__':
    unittest.main()
