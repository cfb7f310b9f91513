"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable
from typing import Any

import pytest

from squadctl.models import ServerInstance, parse_instance


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


InstanceFactory = Callable[..., ServerInstance]


@pytest.fixture
def make_instance() -> InstanceFactory:
    """Return a factory building validated instances from keyword overrides."""

    def _factory(name: str = "main", **raw: Any) -> ServerInstance:
        payload: dict[str, Any] = {"enable": True}
        payload.update(raw)
        return parse_instance(name, payload)

    return _factory
