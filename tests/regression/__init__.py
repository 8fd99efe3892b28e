"""End-to-end regression scenarios for the transcode queue."""
