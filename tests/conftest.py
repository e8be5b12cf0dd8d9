"""Shared test fixtures for the IntakeFlow test suite."""

from __future__ import annotations

import copy
import os
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import yaml

from intakeflow.config import Settings
from intakeflow.engine.interpreter import FlowInterpreter
from intakeflow.flows.validator import build_graph
from intakeflow.scheduling import SlotScheduler
from intakeflow.services.storage import InMemoryRepository

FLOWS_DIR = Path(__file__).resolve().parent.parent / "flows"
LAWN_FLOW_PATH = FLOWS_DIR / "lawn_intake.yaml"

# Monday 2026-10-19, 08:00 in America/New_York
FIXED_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    ``intakeflow.server`` builds its settings at import time, so the
    environment must be in place before the test modules are imported.
    """
    os.environ.setdefault("FLOWS_DIR", str(FLOWS_DIR))
    os.environ["ANTHROPIC_API_KEY"] = ""
    os.environ["RECORD_SINK_URL"] = ""
    os.environ["DATABASE_PATH"] = ""
    os.environ["METRICS_ENABLED"] = "false"


class FakeClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(flows_dir=FLOWS_DIR, timezone="America/New_York")


@pytest.fixture(scope="session")
def _lawn_document():
    return yaml.safe_load(LAWN_FLOW_PATH.read_text(encoding="utf-8"))


@pytest.fixture
def lawn_document(_lawn_document):
    """A fresh, mutable copy of the sample lawn-care flow."""
    return copy.deepcopy(_lawn_document)


@pytest.fixture
def lawn_graph(lawn_document):
    return build_graph(lawn_document)


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def scheduler(repository, settings, clock):
    return SlotScheduler(repository, settings, clock=clock)


@pytest.fixture
def interpreter(settings, scheduler):
    return FlowInterpreter(settings, scheduler=scheduler)


@pytest.fixture
def make_flow():
    """Factory for small flow documents; pass nodes and optional extras."""

    def _make(nodes: list[dict], *, start: str | None = None, max_questions: int = 5, **extra):
        document = {
            "flow": {
                "id": "test_flow",
                "name": "Test flow",
                "version": "1",
                "maxQuestions": max_questions,
                "startNodeId": start or nodes[0]["id"],
            },
            "nodes": nodes,
        }
        document.update(extra)
        return document

    return _make
