"""
Test package for target_transcode.

Unit tests live in tests/unit, end-to-end queue scenarios in tests/regression.
No test invokes ffmpeg; tests/fakes.py provides the encode and measurement doubles.
"""
