"""
Unit tests for system_utils module.

Covers path removal, command quoting, and the cancellable process runner
(exercised with small POSIX shell commands).
"""

import subprocess
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import patch

from target_transcode.core.errors import TaskCancelled
from target_transcode.core.modules.system.system_utils import (
    TEMP_FILES, quote_cmd, remove_files, remove_path, run_cancellable, run_command
)
from target_transcode.utils.logging import format_duration, format_size


class TestRemovePath(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_removes_file_and_unregisters(self):
        f = self.root / "candidate.mkv"
        f.write_bytes(b"x")
        TEMP_FILES.add(f)

        self.assertTrue(remove_path(f))
        self.assertFalse(f.exists())
        self.assertNotIn(f, TEMP_FILES)

    def test_removes_directory_tree(self):
        nested = self.root / "work" / "chunk_0000"
        nested.mkdir(parents=True)
        (nested / "chunk_0000.mkv").write_bytes(b"x")

        self.assertTrue(remove_path(self.root / "work"))
        self.assertFalse((self.root / "work").exists())

    def test_missing_path_is_not_an_error(self):
        self.assertFalse(remove_path(self.root / "missing.mkv"))

    def test_remove_files_counts_existing(self):
        a = self.root / "a.mkv"
        a.write_bytes(b"x")

        self.assertEqual(remove_files([a, self.root / "b.mkv"]), 1)


class TestCommands(unittest.TestCase):

    def test_quote_cmd_escapes_spaces(self):
        self.assertEqual(quote_cmd(["ffmpeg", "-i", "my movie.mkv"]), "ffmpeg -i 'my movie.mkv'")

    @patch('target_transcode.core.modules.system.system_utils.subprocess.run')
    def test_run_command_passes_timeout(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess([], 0, "ok", "")

        run_command(["ffprobe", "x"], timeout=5)

        self.assertEqual(mock_run.call_args[1]["timeout"], 5)


class TestRunCancellable(unittest.TestCase):

    def test_lines_streamed_to_callback(self):
        lines = []
        result = run_cancellable(["sh", "-c", "echo one; echo two; echo err >&2"], on_line=lines.append)

        self.assertEqual(result.returncode, 0)
        self.assertEqual(lines, ["one", "two"])
        self.assertEqual(result.stderr.strip(), "err")

    def test_stderr_stream_selected(self):
        lines = []
        result = run_cancellable(["sh", "-c", "echo progress >&2; echo data"],
                                 on_line=lines.append, stream="stderr")

        self.assertEqual(lines, ["progress"])
        self.assertEqual(result.stdout.strip(), "data")
        self.assertEqual(result.stderr.strip(), "progress")

    def test_non_zero_exit_reported(self):
        result = run_cancellable(["sh", "-c", "exit 3"])

        self.assertEqual(result.returncode, 3)

    def test_cancel_terminates_process(self):
        cancel = threading.Event()
        timer = threading.Timer(0.2, cancel.set)
        timer.start()
        started = time.monotonic()
        try:
            with self.assertRaises(TaskCancelled):
                run_cancellable(["sleep", "30"], cancel_event=cancel)
        finally:
            timer.cancel()

        self.assertLess(time.monotonic() - started, 10)


class TestFormatting(unittest.TestCase):

    def test_format_size(self):
        self.assertEqual(format_size(512), "512.0B")
        self.assertEqual(format_size(1536), "1.5KB")
        self.assertEqual(format_size(2 * 1024 ** 3), "2.0GB")

    def test_format_duration(self):
        self.assertEqual(format_duration(42), "42.0s")
        self.assertEqual(format_duration(90), "1.5m")
        self.assertEqual(format_duration(3720), "1h 2m")


if __name__ == '__main__':
    unittest.main()
