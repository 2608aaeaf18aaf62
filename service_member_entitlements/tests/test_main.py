"""
Unit tests for the Member Entitlements HTTP service.
"""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from shared.errors import StorageUnavailableError
from service_member_entitlements.app.main import MemberEntitlementsService, create_app


class TestMemberEntitlementsService:
    """Test cases for MemberEntitlementsService."""

    @pytest.fixture
    def service(self, factory, make_repository):
        """Create service with an in-memory repository."""
        service = MemberEntitlementsService(default_target_year=2025)
        service.entitlements.repository = make_repository(factory.member_snapshot())
        return service

    @pytest.fixture
    def client(self, service):
        """Create test client without running startup."""
        return TestClient(service.app)

    def test_create_app(self):
        app = create_app()
        assert app.title == "Member Entitlements Service"

    def test_service_initialization(self, service):
        assert service.service_name == "member_entitlements"
        assert service.port == 8011
        assert service.entitlements.enforce_claim_limits is True
        assert service.entitlements.default_target_year == 2025

    def test_root_endpoint(self, client):
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "member_entitlements"
        assert "guarded_claims" in data["capabilities"]

    def test_health_endpoint(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["dependencies"]["postgres"] == "error"

    @patch("service_member_entitlements.app.main.MemberEntitlementsService._check_dependencies")
    def test_health_with_dependencies(self, mock_check_deps, client):
        mock_check_deps.return_value = {"postgres": "ok", "redis": "ok"}

        response = client.get("/health")

        assert response.json()["dependencies"] == {"postgres": "ok", "redis": "ok"}

    def test_metrics_endpoint(self, client):
        client.get("/")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text

    def test_request_id_header(self, client):
        response = client.get("/", headers={"x-request-id": "req-42"})

        assert response.headers["x-request-id"] == "req-42"

    def test_get_benefits(self, client):
        response = client.get("/organizations/org-1/benefits", params={"tier": "Executive", "year": 2025})

        assert response.status_code == 200
        data = response.json()
        assert data["organization_id"] == "org-1"
        assert data["target_year"] == 2025
        webinar = data["categories"][0]["benefits"][0]
        assert webinar["benefit_id"] == "webinar"
        assert webinar["entitled"] == 2
        assert webinar["remaining"] == 2

    def test_get_benefits_requires_tier(self, client):
        response = client.get("/organizations/org-1/benefits")

        assert response.status_code == 422

    def test_get_allocations(self, client):
        response = client.get("/organizations/org-1/allocations", params={"tier": "Executive"})

        assert response.status_code == 200
        data = response.json()
        assert data[0]["event_id"] == "summit"
        assert data[0]["tickets_remaining"] == 5

    def test_get_event_allocation_not_found(self, client):
        response = client.get("/organizations/org-1/events/missing/allocations", params={"tier": "Executive"})

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_claim_ticket(self, client):
        payload = {
            "tier": "Executive",
            "pass_type": "pro",
            "attendee_name": "Ada Lovelace",
            "attendee_email": "ada@example.com"
        }

        first = client.post("/organizations/org-1/events/summit/claims", json=payload)
        second = client.post("/organizations/org-1/events/summit/claims", json=payload)

        assert first.status_code == 201
        assert first.json()["remaining"] == 0
        assert second.status_code == 409
        assert second.json()["code"] == "ALLOCATION_EXHAUSTED"
        assert second.json()["details"]["field"] == "pro_tickets"

    def test_claim_validation(self, client):
        response = client.post(
            "/organizations/org-1/events/summit/claims",
            json={"tier": "Executive", "kind": "vip_dinner", "attendee_name": "Ada", "attendee_email": "ada@x.io"}
        )

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_seat_claim_for_non_member(self, client):
        response = client.post(
            "/organizations/org-1/events/summit/claims",
            json={"tier": "Executive", "kind": "symposium", "profile_id": "outsider",
                  "attendee_name": "Ada", "attendee_email": "ada@x.io"}
        )

        assert response.status_code == 400
        assert response.json()["details"]["profile_id"] == "outsider"

    def test_record_fulfillment(self, client):
        response = client.post(
            "/organizations/org-1/benefits/webinar/fulfillments",
            json={"tier": "Executive", "period_year": 2025, "quantity": 2, "title": "Spring series"}
        )

        assert response.status_code == 201
        data = response.json()
        assert data["kind"] == "fulfillment"
        assert data["remaining"] == 0

    def test_record_fulfillment_exceeding_balance(self, client):
        response = client.post(
            "/organizations/org-1/benefits/webinar/fulfillments",
            json={"tier": "Executive", "period_year": 2025, "quantity": 3}
        )

        assert response.status_code == 409

    def test_storage_unavailable(self, service, client):
        service.entitlements.repository.load_snapshot = AsyncMock(
            side_effect=StorageUnavailableError("connection refused")
        )

        response = client.get("/organizations/org-1/benefits", params={"tier": "Executive"})

        assert response.status_code == 503
        assert response.json()["code"] == "STORAGE_UNAVAILABLE"
