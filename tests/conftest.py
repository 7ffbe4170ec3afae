"""Root conftest — shared test configuration."""

import os

# Ensure tests never talk to a real analysis backend
os.environ.setdefault("BACKEND_BASE_URL", "http://backend.test")
os.environ.setdefault("LOG_FORMAT", "text")
