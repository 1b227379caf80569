"""Root conftest.py: make the top-level modules importable and register markers."""

import sys
from pathlib import Path


def pytest_configure(config):
    project_root = Path(__file__).parent.resolve()
    if str(project_root) not in sys.path:
        sys.path.insert(0, str(project_root))

    config.addinivalue_line(
        "markers", "unit: fast tests with stand-in tools, no QIIME 2 install needed"
    )
