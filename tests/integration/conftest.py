"""Shared fixtures for orchestrator integration tests."""

from __future__ import annotations

import pytest

from pipeline_orchestrator.database import PipelineDB


@pytest.fixture
async def db():
    """In-memory database with schema initialized."""
    async with PipelineDB(":memory:") as database:
        yield database
