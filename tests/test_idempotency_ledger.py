"""
Tests for the idempotency ledger
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from fulfillment.core.exceptions import InvariantViolationError
from fulfillment.db.models.failed_job import FailedJob, FailedJobStatus
from fulfillment.db.models.processing_record import ProcessingStatus
from fulfillment.domain.events import FULFILLMENT_JOB_TYPE
from fulfillment.domain.services.idempotency_ledger import (
    STALE_CLAIM_REASON,
    IdempotencyLedger,
)


@pytest.fixture
def ledger(db_session) -> IdempotencyLedger:
    return IdempotencyLedger(db_session)


class TestClaim:

    @pytest.mark.unit
    async def test_first_claim_wins(self, ledger: IdempotencyLedger):
        claim = await ledger.try_claim("evt_1", "checkout.session.completed")

        assert claim.claimed is True
        record = await ledger.lookup("evt_1")
        assert record.status == ProcessingStatus.CLAIMED
        assert record.attempt_count == 1
        assert record.claimed_at is not None

    @pytest.mark.unit
    async def test_second_claim_returns_existing_state(self, ledger: IdempotencyLedger):
        await ledger.try_claim("evt_1", "checkout.session.completed")
        await ledger.commit("evt_1", {"action": "fulfilled"})

        claim = await ledger.try_claim("evt_1", "checkout.session.completed")

        assert claim.claimed is False
        assert claim.existing_status == ProcessingStatus.PROCESSED
        assert claim.existing_result == {"action": "fulfilled"}
        assert claim.attempt_count == 2

    @pytest.mark.unit
    async def test_duplicate_never_overwrites_record(self, ledger: IdempotencyLedger):
        await ledger.try_claim("evt_1", "checkout.session.completed")
        await ledger.fail("evt_1", "boom")

        claim = await ledger.try_claim("evt_1", "charge.refunded")

        assert claim.claimed is False
        record = await ledger.lookup("evt_1")
        assert record.status == ProcessingStatus.FAILED
        assert record.event_type == "checkout.session.completed"
        assert record.error == "boom"

    @pytest.mark.unit
    async def test_claim_stores_payload(self, ledger: IdempotencyLedger):
        payload = {"id": "evt_1", "type": "checkout.session.completed", "data": {"object": {"id": "cs_1"}}}

        await ledger.try_claim("evt_1", "checkout.session.completed", payload)

        assert (await ledger.lookup("evt_1")).payload == payload

    @pytest.mark.unit
    async def test_lookup_missing(self, ledger: IdempotencyLedger):
        assert await ledger.lookup("evt_unknown") is None


class TestTransitions:

    @pytest.mark.unit
    async def test_commit_stores_result(self, ledger: IdempotencyLedger):
        await ledger.try_claim("evt_1", "checkout.session.completed")

        await ledger.commit("evt_1", {"action": "fulfilled", "order_id": 7})

        record = await ledger.lookup("evt_1")
        assert record.status == ProcessingStatus.PROCESSED
        assert record.result == {"action": "fulfilled", "order_id": 7}
        assert record.completed_at is not None

    @pytest.mark.unit
    async def test_commit_twice_is_rejected(self, ledger: IdempotencyLedger):
        await ledger.try_claim("evt_1", "checkout.session.completed")
        await ledger.commit("evt_1", {"action": "fulfilled"})

        with pytest.raises(InvariantViolationError) as exc_info:
            await ledger.commit("evt_1", {"action": "other"})

        assert exc_info.value.details["current_status"] == "processed"
        record = await ledger.lookup("evt_1")
        assert record.result == {"action": "fulfilled"}

    @pytest.mark.unit
    async def test_commit_after_fail_is_rejected(self, ledger: IdempotencyLedger):
        await ledger.try_claim("evt_1", "checkout.session.completed")
        await ledger.fail("evt_1", "fatal")

        with pytest.raises(InvariantViolationError):
            await ledger.commit("evt_1", {"action": "fulfilled"})

    @pytest.mark.unit
    async def test_commit_unknown_event_is_rejected(self, ledger: IdempotencyLedger):
        with pytest.raises(InvariantViolationError) as exc_info:
            await ledger.commit("evt_missing", None)

        assert exc_info.value.details["current_status"] is None

    @pytest.mark.unit
    async def test_fail_truncates_long_reason(self, ledger: IdempotencyLedger):
        await ledger.try_claim("evt_1", "checkout.session.completed")

        await ledger.fail("evt_1", "x" * 5000)

        record = await ledger.lookup("evt_1")
        assert record.status == ProcessingStatus.FAILED
        assert len(record.error) == 2000


class TestStaleClaims:

    @pytest.mark.unit
    async def test_only_old_claims_are_failed(self, ledger: IdempotencyLedger, db_session):
        await ledger.try_claim("evt_old", "checkout.session.completed")
        await ledger.try_claim("evt_new", "checkout.session.completed")
        await ledger.try_claim("evt_done", "checkout.session.completed")
        await ledger.commit("evt_done", {})

        old = await ledger.lookup("evt_old")
        old.claimed_at = datetime.utcnow() - timedelta(hours=1)
        done = await ledger.lookup("evt_done")
        done.claimed_at = datetime.utcnow() - timedelta(hours=1)
        await db_session.commit()

        failed = await ledger.fail_stale_claims(datetime.utcnow() - timedelta(minutes=10))

        assert failed == ["evt_old"]
        record = await ledger.lookup("evt_old")
        assert record.status == ProcessingStatus.FAILED
        assert record.error == STALE_CLAIM_REASON
        assert (await ledger.lookup("evt_new")).status == ProcessingStatus.CLAIMED
        assert (await ledger.lookup("evt_done")).status == ProcessingStatus.PROCESSED

        jobs = (await db_session.execute(select(FailedJob))).scalars().all()
        assert [j.event_id for j in jobs] == ["evt_old"]
        assert jobs[0].job_type == FULFILLMENT_JOB_TYPE
        assert jobs[0].status == FailedJobStatus.PENDING
        assert jobs[0].error == STALE_CLAIM_REASON
