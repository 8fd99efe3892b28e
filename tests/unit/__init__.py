"""Unit tests for target_transcode modules."""
