"""Per-network deployment manifest with cross-process locking and migration."""
