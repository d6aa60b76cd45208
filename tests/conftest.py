"""
Pytest and unittest configuration for the measurement engine tests.

Adds project src/ to sys.path so tests can import from core, utils and tools.
Run tests from project root with:
  - pytest
  - python -m unittest discover -s tests -p "test_*.py"
"""

import sys
import os

import pytest

# Add src to path so that "from core.xxx" and "from utils.xxx" work
_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
_src_dir = os.path.join(_project_root, "src")
if _src_dir not in sys.path:
    sys.path.insert(0, _src_dir)


@pytest.fixture(autouse=True)
def _quiet_debug_output(monkeypatch):
    """Keep debug console output and the JSON debug log off during tests."""
    monkeypatch.delenv("MEASUREMENT_ENGINE_DEBUG", raising=False)
    monkeypatch.delenv("MEASUREMENT_ENGINE_DEBUG_LOG", raising=False)
