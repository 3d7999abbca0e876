"""Pytest configuration and test categorization.

Tests live in a flat `tests/` directory and are categorized into `unit`,
`regression`, `e2e` and `benchmark` via markers derived from the filename,
so CI can run targeted subsets (`pytest -m "not e2e"`).
"""

from __future__ import annotations

import logging
import pathlib

import pytest


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Auto-apply test category markers based on filename conventions."""
    for item in items:
        path = pathlib.Path(str(item.fspath))
        name = path.name.lower()

        if "benchmark" in name:
            item.add_marker(pytest.mark.benchmark)
            continue

        if "e2e" in name or "end_to_end" in name:
            item.add_marker(pytest.mark.e2e)
            continue

        if "regression" in name:
            item.add_marker(pytest.mark.regression)
            continue

        item.add_marker(pytest.mark.unit)


@pytest.fixture(autouse=True)
def _isolated_logger():
    """Drop handlers a previous CLI run attached to the shared logger."""
    logger = logging.getLogger("device_solver")
    saved = list(logger.handlers)
    yield
    for handler in list(logger.handlers):
        if handler not in saved:
            logger.removeHandler(handler)
            handler.close()
