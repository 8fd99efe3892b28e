"""External media tools: probing, quality measurement, scene detection."""
