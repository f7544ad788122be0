"""
Tests for the unified data access layer.

Validates that every write is validated in full before persistence,
that status changes go through the transition table, that batches are
atomic, and that reads come back through the domain mappers.
"""
from datetime import datetime, timedelta, timezone

import pytest

from rec_review.errors import InvalidTransition, NotFoundError, StaleWriteError, ValidationError
from rec_review.lifecycle import ActorRole, DecisionCollection, Protocol, ProtocolStatus, ReviewerRole, Verdict
from rec_review.storage import EntityKind
from rec_review.storage.mappers import format_timestamp, parse_timestamp


def protocol_patch(**overrides):
    patch = {
        "status": ProtocolStatus.PENDING_UPLOAD.value,
        "submittedBy": "U1",
        "title": "Sleep and memory study",
    }
    patch.update(overrides)
    return patch


def decision_patch(**overrides):
    patch = {
        "protocolId": "P1",
        "authorRole": "reviewer",
        "authorId": "R1",
        "collection": "accepted",
        "verdict": "approve",
        "isActive": True,
    }
    patch.update(overrides)
    return patch


class TestWriteValidation:
    """Test validation before persistence."""

    @pytest.mark.asyncio
    async def test_create_protocol(self, dal):
        protocol = await dal.write(EntityKind.PROTOCOL, "P1", protocol_patch(), actor_role=ActorRole.PROPONENT)

        assert isinstance(protocol, Protocol)
        assert protocol.status is ProtocolStatus.PENDING_UPLOAD
        assert protocol.submitted_by == "U1"
        assert protocol.created_at.tzinfo is not None
        assert protocol.version == 1

    @pytest.mark.asyncio
    async def test_validation_lists_every_failing_field(self, dal, store):
        with pytest.raises(ValidationError) as exc_info:
            await dal.write(
                EntityKind.PROTOCOL, "P1",
                {"status": "Published", "deadlineAt": "next tuesday", "assignedReviewers": "R1"},
                actor_role=ActorRole.PROPONENT,
            )

        fields = {f.field for f in exc_info.value.fields}
        assert fields == {"status", "submittedBy", "deadlineAt", "assignedReviewers"}
        assert exc_info.value.code == "VALIDATION_ERROR"
        assert len(exc_info.value.to_dict()["fields"]) == 4
        assert await store.get("submissions", "P1") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("deadline", [1e20, -1e20])
    async def test_out_of_range_epoch_is_field_error(self, dal, store, deadline):
        with pytest.raises(ValidationError) as exc_info:
            await dal.write(
                EntityKind.PROTOCOL, "P1", protocol_patch(deadlineAt=deadline),
                actor_role=ActorRole.PROPONENT,
            )

        assert [f.field for f in exc_info.value.fields] == ["deadlineAt"]
        assert await store.get("submissions", "P1") is None

    @pytest.mark.asyncio
    async def test_platform_timestamp_error_is_field_error(self, dal, monkeypatch):
        def unrepresentable(value):
            raise OSError(75, "Value too large for defined data type")

        monkeypatch.setattr("rec_review.storage.validation.format_timestamp", unrepresentable)

        with pytest.raises(ValidationError) as exc_info:
            await dal.write(
                EntityKind.PROTOCOL, "P1", protocol_patch(deadlineAt=253402300800),
                actor_role=ActorRole.PROPONENT,
            )

        assert "deadlineAt" in {f.field for f in exc_info.value.fields}

    @pytest.mark.asyncio
    async def test_managed_fields_rejected(self, dal):
        with pytest.raises(ValidationError) as exc_info:
            await dal.write(
                EntityKind.PROTOCOL, "P1",
                protocol_patch(lastModifiedAt="2024-01-01T00:00:00Z", version=7),
                actor_role=ActorRole.PROPONENT,
            )

        assert {f.field for f in exc_info.value.fields} == {"lastModifiedAt", "version"}

    @pytest.mark.asyncio
    async def test_submitted_by_is_immutable(self, dal):
        await dal.write(EntityKind.PROTOCOL, "P1", protocol_patch(), actor_role=ActorRole.PROPONENT)

        with pytest.raises(ValidationError) as exc_info:
            await dal.write(EntityKind.PROTOCOL, "P1", {"submittedBy": "U2"})

        assert exc_info.value.fields[0].field == "submittedBy"
        assert (await dal.read(EntityKind.PROTOCOL, "P1")).submitted_by == "U1"

    @pytest.mark.asyncio
    async def test_decision_verdict_is_immutable(self, dal):
        await dal.write(EntityKind.ACCEPTED_DECISION, "D1", decision_patch())

        with pytest.raises(ValidationError):
            await dal.write(EntityKind.ACCEPTED_DECISION, "D1", {"verdict": "reject"})

        closed = await dal.write(
            EntityKind.ACCEPTED_DECISION, "D1",
            {"isActive": False, "supersededBy": "resubmission"},
        )
        assert closed.is_active is False
        assert closed.verdict is Verdict.APPROVE

    @pytest.mark.asyncio
    async def test_domain_names_accepted_in_patches(self, dal):
        reviewer = await dal.write(
            EntityKind.REVIEWER, "R1",
            {"name": "Ana", "role": "reviewer", "is_active": True},
        )

        assert reviewer.is_active is True
        assert reviewer.role is ReviewerRole.REVIEWER

    @pytest.mark.asyncio
    async def test_second_active_chairperson_rejected(self, dal):
        await dal.write(EntityKind.REVIEWER, "C1", {"name": "Dr. Reyes", "role": "chairperson", "isActive": True})

        with pytest.raises(ValidationError) as exc_info:
            await dal.write(EntityKind.REVIEWER, "C2", {"name": "Dr. Lim", "role": "chairperson", "isActive": True})

        assert exc_info.value.fields[0].field == "role"

        await dal.write(EntityKind.REVIEWER, "C1", {"isActive": False})
        replacement = await dal.write(
            EntityKind.REVIEWER, "C2", {"name": "Dr. Lim", "role": "chairperson", "isActive": True},
        )
        assert replacement.role is ReviewerRole.CHAIRPERSON


class TestTransitions:
    """Test status changes through the data access layer."""

    @pytest.mark.asyncio
    async def test_creation_requires_actor_role(self, dal):
        with pytest.raises(InvalidTransition):
            await dal.write(EntityKind.PROTOCOL, "P1", protocol_patch())

    @pytest.mark.asyncio
    async def test_illegal_transition_writes_nothing(self, dal):
        await dal.write(EntityKind.PROTOCOL, "P1", protocol_patch(), actor_role=ActorRole.PROPONENT)

        with pytest.raises(InvalidTransition) as exc_info:
            await dal.write(
                EntityKind.PROTOCOL, "P1",
                {"status": ProtocolStatus.APPROVED.value},
                actor_role=ActorRole.CHAIRPERSON,
            )

        assert exc_info.value.current == "Pending Upload"
        assert exc_info.value.actor_role == "chairperson"
        protocol = await dal.read(EntityKind.PROTOCOL, "P1")
        assert protocol.status is ProtocolStatus.PENDING_UPLOAD
        assert protocol.version == 1

    @pytest.mark.asyncio
    async def test_non_status_patch_needs_no_role(self, dal):
        await dal.write(EntityKind.PROTOCOL, "P1", protocol_patch(), actor_role=ActorRole.PROPONENT)

        protocol = await dal.write(EntityKind.PROTOCOL, "P1", {"title": "Renamed"})

        assert protocol.title == "Renamed"
        assert protocol.version == 2


class TestStaleness:
    """Test the optimistic staleness token."""

    @pytest.mark.asyncio
    async def test_last_modified_is_monotonic(self, dal, clock):
        first = await dal.write(EntityKind.PROTOCOL, "P1", protocol_patch(), actor_role=ActorRole.PROPONENT)
        second = await dal.write(EntityKind.PROTOCOL, "P1", {"title": "Same instant"})

        assert second.last_modified_at > first.last_modified_at

    @pytest.mark.asyncio
    async def test_stale_write_rejected(self, dal, clock):
        created = await dal.write(EntityKind.PROTOCOL, "P1", protocol_patch(), actor_role=ActorRole.PROPONENT)
        clock.advance(minutes=5)
        await dal.write(EntityKind.PROTOCOL, "P1", {"title": "Edited elsewhere"})

        with pytest.raises(StaleWriteError) as exc_info:
            await dal.write(
                EntityKind.PROTOCOL, "P1", {"title": "Mine"},
                expected_modified_at=created.last_modified_at,
            )

        assert exc_info.value.code == "STALE_WRITE"

        current = await dal.read(EntityKind.PROTOCOL, "P1")
        updated = await dal.write(
            EntityKind.PROTOCOL, "P1", {"title": "Mine"},
            expected_modified_at=current.last_modified_at,
        )
        assert updated.title == "Mine"


class TestBatches:
    """Test atomic multi-document writes."""

    @pytest.mark.asyncio
    async def test_failed_batch_persists_nothing(self, dal, store):
        await dal.write(EntityKind.PROTOCOL, "P1", protocol_patch(), actor_role=ActorRole.PROPONENT)

        with pytest.raises(InvalidTransition):
            async with dal.batch() as batch:
                await batch.write(EntityKind.ACCEPTED_DECISION, "D1", decision_patch())
                await batch.write(
                    EntityKind.PROTOCOL, "P1",
                    {"status": ProtocolStatus.APPROVED.value},
                    actor_role=ActorRole.PROPONENT,
                )

        assert await store.get("accepted", "D1") is None
        assert (await dal.read(EntityKind.PROTOCOL, "P1")).status is ProtocolStatus.PENDING_UPLOAD

    @pytest.mark.asyncio
    async def test_writes_to_one_document_collapse(self, dal):
        """A batch moving a protocol twice stores one new version."""
        await dal.write(EntityKind.PROTOCOL, "P1", protocol_patch(), actor_role=ActorRole.PROPONENT)

        async with dal.batch() as batch:
            await batch.write(EntityKind.PROTOCOL, "P1", {"status": "Submitted"}, actor_role=ActorRole.PROPONENT)
            staged = await batch.current(EntityKind.PROTOCOL, "P1")
            assert staged["status"] == "Submitted"
            await batch.write(EntityKind.PROTOCOL, "P1", {"status": "Under Review"}, actor_role=ActorRole.CHAIRPERSON)

        protocol = await dal.read(EntityKind.PROTOCOL, "P1")
        assert protocol.status is ProtocolStatus.UNDER_REVIEW
        assert protocol.version == 2


class TestReadsAndQueries:
    """Test reads, hydration and queries."""

    @pytest.mark.asyncio
    async def test_read_missing_raises_not_found(self, dal):
        with pytest.raises(NotFoundError) as exc_info:
            await dal.read(EntityKind.PROTOCOL, "P404")

        assert exc_info.value.code == "NOT_FOUND"
        assert await dal.get(EntityKind.PROTOCOL, "P404") is None

    @pytest.mark.asyncio
    async def test_protocol_hydrated_with_decisions(self, dal):
        await dal.write(EntityKind.PROTOCOL, "P1", protocol_patch(), actor_role=ActorRole.PROPONENT)
        await dal.write(EntityKind.ACCEPTED_DECISION, "D2", decision_patch(createdAt="2024-01-02T00:00:00Z"))
        await dal.write(
            EntityKind.APPROVED_DECISION, "D1",
            decision_patch(authorRole="chairperson", authorId="CHAIR", collection="approved",
                           createdAt="2024-01-01T00:00:00Z"),
        )
        await dal.write(EntityKind.ACCEPTED_DECISION, "D3", decision_patch(protocolId="P2"))

        protocol = await dal.read(EntityKind.PROTOCOL, "P1")

        assert [d.id for d in protocol.decisions] == ["D1", "D2"]
        assert [d.id for d in protocol.active_decisions(DecisionCollection.ACCEPTED)] == ["D2"]

    @pytest.mark.asyncio
    async def test_timestamps_canonicalized(self, dal, store):
        await dal.write(
            EntityKind.PROTOCOL, "P1",
            protocol_patch(deadlineAt="2024-06-30T17:00:00+02:00"),
            actor_role=ActorRole.PROPONENT,
        )

        stored = await store.get("submissions", "P1")
        assert stored.data["deadlineAt"] == "2024-06-30T15:00:00.000000Z"

        protocol = await dal.read(EntityKind.PROTOCOL, "P1")
        assert protocol.deadline_at == datetime(2024, 6, 30, 15, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_query_ordering_and_limit(self, dal):
        for i, reviewer_id in enumerate(["R3", "R1", "R2"]):
            await dal.write(EntityKind.REVIEWER, reviewer_id, {
                "name": f"Reviewer {i}", "role": "reviewer", "isActive": reviewer_id != "R2",
            })

        by_creation = await dal.query(EntityKind.REVIEWER)
        assert [r.id for r in by_creation] == ["R3", "R1", "R2"]

        by_id_desc = await dal.query(EntityKind.REVIEWER, order_by="id", descending=True)
        assert [r.id for r in by_id_desc] == ["R3", "R2", "R1"]

        active = await dal.query(EntityKind.REVIEWER, where={"is_active": True})
        assert [r.id for r in active] == ["R3", "R1"]

        named = await dal.query(EntityKind.REVIEWER, predicate=lambda r: r.name.endswith("2"), limit=5)
        assert [r.id for r in named] == ["R2"]

        assert len(await dal.query(EntityKind.REVIEWER, limit=2)) == 2

    @pytest.mark.asyncio
    async def test_write_entity_round_trips_through_mappers(self, dal):
        created = await dal.write(EntityKind.PROTOCOL, "P1", protocol_patch(), actor_role=ActorRole.PROPONENT)

        renamed = Protocol(**{**created.__dict__, "title": "Renamed", "decisions": ()})
        stored = await dal.write_entity(EntityKind.PROTOCOL, renamed)

        assert stored.title == "Renamed"
        assert stored.created_at == created.created_at

    @pytest.mark.asyncio
    async def test_delete_cascades_to_owned_records(self, dal, store):
        await dal.write(EntityKind.PROTOCOL, "P1", protocol_patch(), actor_role=ActorRole.PROPONENT)
        await dal.write(EntityKind.ACCEPTED_DECISION, "D1", decision_patch())
        await dal.write(EntityKind.ASSESSMENT, "A1", {
            "protocolId": "P1", "reviewerId": "R1",
            "formType": "Protocol Review Assessment", "status": "draft",
        })

        await dal.delete(EntityKind.PROTOCOL, "P1")

        assert await store.get("submissions", "P1") is None
        assert await store.get("accepted", "D1") is None
        assert await store.get("assessment_forms", "A1") is None
        with pytest.raises(NotFoundError):
            await dal.delete(EntityKind.PROTOCOL, "P1")


def test_timestamp_helpers():
    assert format_timestamp("2024-01-01T00:00:00Z") == "2024-01-01T00:00:00.000000Z"
    assert parse_timestamp(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp(datetime(2024, 1, 1)) == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp(None) is None
    with pytest.raises(ValueError):
        parse_timestamp("yesterday")
    assert parse_timestamp("2024-01-01T02:00:00+02:00") - parse_timestamp("2024-01-01T00:00:00Z") == timedelta(0)
