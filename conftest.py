"""Pytest configuration shared by all test modules."""

import os

# Keep test runs from writing log files or reading a developer's .env overrides
os.environ.setdefault("LOG_FILE_ENABLED", "false")
