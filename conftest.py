"""Root conftest.py for pytest.

Puts the project root on sys.path so ``config`` and ``vcloud`` import
without an installed package.
"""
import os
import sys

project_root = os.path.dirname(os.path.abspath(__file__))


def pytest_configure(config):
    """Make the top-level packages importable before collection."""
    if project_root not in sys.path:
        sys.path.insert(0, project_root)
