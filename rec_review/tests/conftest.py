"""
Shared pytest fixtures for review engine tests.

This module provides reusable fixtures that simplify test setup
and reduce code duplication across test modules.
"""
import asyncio
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from rec_review.config import ReviewConfig
from rec_review.lifecycle import ReviewerRole
from rec_review.service import ProtocolReviewService
from rec_review.storage import Database, DataAccessLayer, DocumentStore


class FakeClock:
    """Controllable UTC clock; frozen until advanced."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def temp_db():
    """
    Create a temporary database for testing.

    Yields:
        Database instance with schema initialized

    Cleanup:
        Automatically closes connection and removes file after test
    """
    with tempfile.NamedTemporaryFile(suffix=".duckdb", delete=True) as f:
        db_path = f.name

    db = Database(db_path)
    db.initialize_schema()
    yield db
    db.close()

    Path(db_path).unlink(missing_ok=True)


@pytest.fixture
def store(temp_db):
    return DocumentStore(temp_db)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dal(store, clock):
    return DataAccessLayer(store, clock=clock)


@pytest.fixture
def config(temp_db):
    return ReviewConfig(
        database_path=temp_db.db_path,
        confirmation_timeout_seconds=0.5,
        inactivity_expiry_days=30,
        archive_after_days=10,
    )


@pytest.fixture
def service(dal, config):
    return ProtocolReviewService(dal, config)


@pytest.fixture
def under_review(service):
    """
    Factory that brings a protocol to Under Review with reviewers assigned.

    Registers a chairperson "CHAIR" and the given reviewers, creates the
    protocol as proponent "U1", submits it and assigns the reviewers.
    """
    async def _make(protocol_id="P1", reviewers=("R1", "R2")):
        await service.register_reviewer("CHAIR", "Dr. Reyes", ReviewerRole.CHAIRPERSON)
        for reviewer_id in reviewers:
            await service.register_reviewer(reviewer_id, f"Reviewer {reviewer_id}")
        await service.create_protocol("U1", "Sleep and memory study", protocol_id=protocol_id)
        await service.submit_protocol(protocol_id, "U1")
        return await service.assign_reviewers(protocol_id, list(reviewers))

    return _make


@pytest.fixture
def wait_for():
    """Poll a predicate until it holds, failing after ``timeout`` seconds."""
    async def _wait(predicate, timeout=2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(0.01)

    return _wait


@pytest.fixture
def settle():
    """Let pending notifications drain, then return."""
    async def _settle(delay=0.05):
        await asyncio.sleep(delay)

    return _settle
