"""
Tests for the admin failed-job and processing-record endpoints
"""
import pytest

from fulfillment.domain.services.failed_job_service import FailedJobTracker
from fulfillment.domain.services.webhook_processor import WebhookProcessor

from tests.factories import ADMIN_HEADERS, checkout_completed

BASE_URL = "/api/admin"


@pytest.fixture
def fail_event(db_session, reliability):
    """מעבד אירוע להזמנה שלא קיימת ומחזיר (event, failed_job_id)"""
    async def _fail(session_id: str = "cs_missing"):
        event = checkout_completed(session_id)
        result = await WebhookProcessor(db_session, reliability).process(event)
        return event, result.failed_job_id

    return _fail


class TestListing:

    @pytest.mark.unit
    async def test_requires_api_key(self, test_client):
        response = await test_client.get(f"{BASE_URL}/failed-jobs")
        assert response.status_code == 401

    @pytest.mark.unit
    async def test_list_jobs(self, test_client, fail_event):
        event, job_id = await fail_event()

        response = await test_client.get(f"{BASE_URL}/failed-jobs", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        job = data["jobs"][0]
        assert job["id"] == job_id
        assert job["event_id"] == event.id
        assert job["status"] == "PENDING"
        assert job["payload"]["id"] == event.id

    @pytest.mark.unit
    async def test_filter_by_status_is_case_insensitive(self, test_client, fail_event, db_session):
        _, first = await fail_event("cs_a")
        await fail_event("cs_b")
        await FailedJobTracker(db_session).abandon(first)

        response = await test_client.get(
            f"{BASE_URL}/failed-jobs", params={"status": "abandoned"}, headers=ADMIN_HEADERS
        )

        assert response.status_code == 200
        assert [j["id"] for j in response.json()["jobs"]] == [first]

    @pytest.mark.unit
    async def test_invalid_status_filter(self, test_client):
        response = await test_client.get(
            f"{BASE_URL}/failed-jobs", params={"status": "broken"}, headers=ADMIN_HEADERS
        )

        assert response.status_code == 400
        assert "Invalid status" in response.json()["detail"]

    @pytest.mark.unit
    async def test_summary(self, test_client, fail_event):
        await fail_event("cs_a")
        await fail_event("cs_b")

        response = await test_client.get(f"{BASE_URL}/failed-jobs/summary", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["counts"]["PENDING"] == 2
        assert data["total"] == 2

    @pytest.mark.unit
    async def test_get_single_job_and_404(self, test_client, fail_event):
        _, job_id = await fail_event()

        found = await test_client.get(f"{BASE_URL}/failed-jobs/{job_id}", headers=ADMIN_HEADERS)
        missing = await test_client.get(f"{BASE_URL}/failed-jobs/9999", headers=ADMIN_HEADERS)

        assert found.status_code == 200
        assert found.json()["id"] == job_id
        assert missing.status_code == 404


class TestActions:

    @pytest.mark.unit
    async def test_retry_resolves_after_order_appears(self, test_client, fail_event, order_factory):
        _, job_id = await fail_event("cs_late")
        await order_factory(session_id="cs_late")

        response = await test_client.post(
            f"{BASE_URL}/failed-jobs/{job_id}/retry", headers=ADMIN_HEADERS
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "RESOLVED"
        assert data["attempts"] == 1
        assert data["resolved_at"] is not None

    @pytest.mark.unit
    async def test_retry_failure_returns_job_to_pending(self, test_client, fail_event):
        _, job_id = await fail_event()

        response = await test_client.post(
            f"{BASE_URL}/failed-jobs/{job_id}/retry", headers=ADMIN_HEADERS
        )

        assert response.status_code == 200
        assert response.json()["status"] == "PENDING"
        assert response.json()["attempts"] == 1

    @pytest.mark.unit
    async def test_retry_after_abandon_is_rejected(self, test_client, fail_event):
        _, job_id = await fail_event()
        await test_client.post(f"{BASE_URL}/failed-jobs/{job_id}/abandon", headers=ADMIN_HEADERS)

        response = await test_client.post(
            f"{BASE_URL}/failed-jobs/{job_id}/retry", headers=ADMIN_HEADERS
        )

        assert response.status_code == 400
        assert "only PENDING" in response.json()["detail"]

    @pytest.mark.unit
    async def test_retry_missing_job(self, test_client):
        response = await test_client.post(
            f"{BASE_URL}/failed-jobs/4242/retry", headers=ADMIN_HEADERS
        )
        assert response.status_code == 404

    @pytest.mark.unit
    async def test_abandon_with_reason(self, test_client, fail_event):
        _, job_id = await fail_event()

        response = await test_client.post(
            f"{BASE_URL}/failed-jobs/{job_id}/abandon",
            json={"reason": "order deleted by support"},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "ABANDONED"

    @pytest.mark.unit
    async def test_abandon_twice_is_rejected(self, test_client, fail_event):
        _, job_id = await fail_event()
        await test_client.post(f"{BASE_URL}/failed-jobs/{job_id}/abandon", headers=ADMIN_HEADERS)

        response = await test_client.post(
            f"{BASE_URL}/failed-jobs/{job_id}/abandon", headers=ADMIN_HEADERS
        )

        assert response.status_code == 400


class TestProcessingRecords:

    @pytest.mark.unit
    async def test_processed_record(self, test_client, db_session, reliability, order_factory):
        order = await order_factory()
        event = checkout_completed(order.provider_session_id)
        await WebhookProcessor(db_session, reliability).process(event)

        response = await test_client.get(
            f"{BASE_URL}/processing-records/{event.id}", headers=ADMIN_HEADERS
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "processed"
        assert data["result"]["action"] == "fulfilled"
        assert data["attempt_count"] == 1

    @pytest.mark.unit
    async def test_failed_record_shows_error(self, test_client, fail_event):
        event, _ = await fail_event()

        response = await test_client.get(
            f"{BASE_URL}/processing-records/{event.id}", headers=ADMIN_HEADERS
        )

        assert response.json()["status"] == "failed"
        assert "OrderNotFoundError" in response.json()["error"]

    @pytest.mark.unit
    async def test_unknown_event(self, test_client):
        response = await test_client.get(
            f"{BASE_URL}/processing-records/evt_nope", headers=ADMIN_HEADERS
        )

        assert response.status_code == 404
