"""Pytest configuration for the featurebot test suite.

Puts the repository root on sys.path so test modules can import the shared
feature fixtures as `resources.tests.helpers.features`, and resets the global
settings instance between tests.
"""

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def reset_global_settings():
    from featurebot.utils import config

    yield
    config.settings = None
