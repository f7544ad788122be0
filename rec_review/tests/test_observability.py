"""
Lightweight validation tests for the observability layer.

These tests verify:
- LifecycleMetrics tracks transitions, decisions and errors
- LifecycleMetrics serializes to dict properly
- LifecycleQualityChecker passes on a clean store and flags bad documents
- StatusReporter generates valid Markdown output

Not comprehensive unit tests - just sanity checks to ensure
the observability layer can be integrated into the service and CLI.
"""
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from rec_review.lifecycle import ActorRole, DecisionCollection, ProtocolStatus, Verdict
from rec_review.observability import (
    LifecycleMetrics,
    LifecycleQualityChecker,
    QualityCheckResult,
    StatusReporter,
)
from rec_review.storage.database import Database


def test_metrics_tracks_transitions():
    """Verify LifecycleMetrics correctly tracks status transitions."""
    metrics = LifecycleMetrics()

    metrics.record_transition(None, ProtocolStatus.PENDING_UPLOAD)
    metrics.record_transition("Pending Upload", "Submitted")
    metrics.record_transition("Submitted", "Submitted")  # No change

    assert metrics.status_changes == 2
    assert metrics.transitions[("new", "Pending Upload")] == 1
    assert metrics.transitions[("Pending Upload", "Submitted")] == 1


def test_metrics_tracks_decisions_and_errors():
    metrics = LifecycleMetrics()

    metrics.record_decision(DecisionCollection.ACCEPTED)
    metrics.record_decision("accepted", superseded=1)
    metrics.record_decision("approved")
    metrics.record_error("INVALID_TRANSITION")
    metrics.record_error("INVALID_TRANSITION")

    assert metrics.decisions_recorded == {"accepted": 2, "approved": 1}
    assert metrics.decisions_superseded == 1
    assert metrics.errors == 2
    assert metrics.errors_by_code["INVALID_TRANSITION"] == 2


def test_metrics_serialization():
    """Verify LifecycleMetrics can be serialized to dict."""
    metrics = LifecycleMetrics(
        started_at=datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc),
        completed_at=datetime(2024, 1, 15, 12, 5, 30, tzinfo=timezone.utc),
    )
    metrics.protocols_created = 3
    metrics.record_transition("Submitted", "Under Review")

    data = metrics.to_dict()

    assert data["protocols_created"] == 3
    assert data["status_changes"] == 1
    assert "Submitted->Under Review" in data["transitions"]
    assert isinstance(data["started_at"], str)  # ISO format
    assert data["completed_at"].startswith("2024-01-15T12:05:30")


@pytest.mark.asyncio
async def test_service_feeds_metrics(service, under_review):
    await under_review()
    await service.record_decision("P1", "R1", ActorRole.REVIEWER, DecisionCollection.ACCEPTED, Verdict.APPROVE)
    await service.record_decision("P1", "R1", ActorRole.REVIEWER, DecisionCollection.ACCEPTED, Verdict.APPROVE)

    metrics = service.metrics
    assert metrics.protocols_created == 1
    assert metrics.transitions[("Submitted", "Under Review")] == 1
    assert metrics.decisions_recorded["accepted"] == 2
    assert metrics.decisions_superseded == 1


def test_quality_checker_runs_on_empty_db():
    """Verify LifecycleQualityChecker can run on empty database."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(f"{tmpdir}/test.duckdb")
        db.initialize_schema()

        checker = LifecycleQualityChecker(db)
        results = checker.run_all_checks()

        assert len(results) == 5
        for result in results:
            assert isinstance(result, QualityCheckResult)
            assert result.check_name
            assert result.passed is True
            assert result.message

        assert checker.status_distribution() == {}

        db.close()


class TestQualityChecksFlagBadData:
    """Documents written around the data access layer are caught."""

    @pytest.mark.asyncio
    async def test_clean_service_data_passes(self, temp_db, service, under_review):
        await under_review()
        await service.record_decision("P1", "R1", ActorRole.REVIEWER, DecisionCollection.ACCEPTED, Verdict.REVISE)
        await service.resubmit_protocol("P1", "U1")
        await service.record_decision("P1", "R1", ActorRole.REVIEWER, DecisionCollection.ACCEPTED, Verdict.APPROVE)

        checker = LifecycleQualityChecker(temp_db)

        assert all(r.passed for r in checker.run_all_checks())
        assert checker.status_distribution() == {"Under Review": 1}

    @pytest.mark.asyncio
    async def test_invalid_status(self, temp_db, store):
        await store.set("submissions", "P1", {"status": "Pending"})

        result = LifecycleQualityChecker(temp_db).check_statuses_in_vocabulary()

        assert result.passed is False
        assert result.details["invalid_count"] == 1

    @pytest.mark.asyncio
    async def test_duplicate_active_decisions(self, temp_db, store):
        await store.set("submissions", "P1", {"status": "Under Review"})
        for doc_id in ["D1", "D2"]:
            await store.set("accepted", doc_id, {"protocolId": "P1", "authorId": "R1", "isActive": True})
        await store.set("accepted", "D3", {"protocolId": "P1", "authorId": "R2", "isActive": True})

        result = LifecycleQualityChecker(temp_db).check_one_active_decision_per_author()

        assert result.passed is False
        assert result.details["duplicate_count"] == 1

    @pytest.mark.asyncio
    async def test_two_active_chairpersons(self, temp_db, store):
        await store.set("reviewers", "C1", {"role": "chairperson", "isActive": True})
        await store.set("reviewers", "C2", {"role": "chairperson", "isActive": True})
        await store.set("reviewers", "C3", {"role": "chairperson", "isActive": False})

        result = LifecycleQualityChecker(temp_db).check_single_active_chairperson()

        assert result.passed is False
        assert result.details["chairperson_count"] == 2

    @pytest.mark.asyncio
    async def test_orphan_decision(self, temp_db, store):
        await store.set("approved", "D1", {"protocolId": "GONE", "authorId": "C1", "isActive": True})

        result = LifecycleQualityChecker(temp_db).check_no_orphan_decisions()

        assert result.passed is False
        assert result.details["orphan_count"] == 1

    @pytest.mark.asyncio
    async def test_stalled_protocols(self, temp_db, service):
        await service.create_protocol("U1", "Old study", protocol_id="P1")
        await service.create_protocol("U1", "Closed study", protocol_id="P2")
        await service.request_transition("P2", ProtocolStatus.EXPIRED, ActorRole.SYSTEM)

        checker = LifecycleQualityChecker(temp_db, stalled_after_days=90)

        later = checker.check_stalled_protocols(now=datetime(2024, 6, 1, tzinfo=timezone.utc))
        assert later.details["stalled_count"] == 1
        assert "stalled >90 days" in later.message
        assert later.passed is True  # below the warning threshold

        soon = checker.check_stalled_protocols(now=datetime(2024, 1, 2, tzinfo=timezone.utc))
        assert soon.details["stalled_count"] == 0


def test_reporter_generates_markdown():
    """Verify StatusReporter generates valid Markdown."""
    metrics = LifecycleMetrics(
        started_at=datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc),
        completed_at=datetime(2024, 1, 15, 12, 5, 30, tzinfo=timezone.utc),
    )
    metrics.protocols_created = 12
    metrics.record_transition("Under Review", "Needs Revision")
    metrics.record_decision("accepted")
    metrics.record_error("STALE_WRITE")
    metrics.status_counts = {"Under Review": 7, "Approved": 5}

    quality_results = [
        QualityCheckResult("check1", True, "Passed"),
        QualityCheckResult("check2", False, "Failed"),
    ]

    report = StatusReporter().generate_report(metrics, quality_results)

    assert "# Protocol Review Report" in report
    assert "**Duration:** 330.0 seconds" in report
    assert "Summary" in report
    assert "Status Distribution" in report
    assert "Under Review → Needs Revision" in report
    assert "Decisions Recorded" in report
    assert "STALE_WRITE" in report
    assert "Data Quality Checks" in report
    assert "12" in report
    assert "✗" in report


def test_reporter_saves_to_file():
    """Verify StatusReporter can save reports to file."""
    reporter = StatusReporter()
    report = reporter.generate_report(LifecycleMetrics(), [])

    with tempfile.TemporaryDirectory() as tmpdir:
        report_path = reporter.save_report(report, Path(tmpdir) / "reports")

        assert report_path.exists()
        assert report_path.name.startswith("review-report-")
        assert report_path.suffix == ".md"
        assert "Protocol Review Report" in report_path.read_text()
