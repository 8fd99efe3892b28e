"""Quality-parameter search, sampling and scene splitting."""
