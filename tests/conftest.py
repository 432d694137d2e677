"""Shared test configuration for hearthcal."""

from collections.abc import Generator
from typing import Any

import pytest


@pytest.fixture(autouse=True)
def clean_test_environment(monkeypatch: Any) -> Generator[None, Any, None]:
    """Ensure HEARTHCAL_* variables from the host never leak into tests."""
    import os

    for key in list(os.environ):
        if key.startswith("HEARTHCAL_"):
            monkeypatch.delenv(key, raising=False)
    yield
