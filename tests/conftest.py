# tests/conftest.py
"""Pytest configuration and fixtures"""
from __future__ import annotations

import pytest

from leadflow.core.dispatch.orchestrator import DispatchOrchestrator
from leadflow.infra.metrics import get_metrics_collector

from fakes import InMemoryDispatchRepository, RecordingNotifier, dispatch_settings


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield


@pytest.fixture
def repo():
    return InMemoryDispatchRepository()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def orchestrator(repo, notifier):
    return DispatchOrchestrator.build(repo, notifier, dispatch_settings())
