"""Tests for API endpoints."""

import os
import pytest
from datetime import datetime
from decimal import Decimal
from unittest.mock import patch
from fastapi import Request
from fastapi.testclient import TestClient

# Set environment variables before importing app
os.environ.setdefault("API_KEY", "test_api_key_12345")

from shift_recon.api import app
from shift_recon.auth import rate_limit_key
from shift_recon.reconciliation import (
    CabinetType,
    InMemoryRecordFetcher,
    InMemoryWorkSessionSource,
    ReconciliationService,
)
from shift_recon.reconciliation.api import get_reconciliation_service


T = datetime(2024, 1, 15)


def at(hour: int, minute: int = 0) -> datetime:
    return T.replace(hour=hour, minute=minute)


@pytest.fixture
def service(make_idex, make_bybit, day_sessions, settings):
    return ReconciliationService(
        fetchers={
            CabinetType.IDEX: InMemoryRecordFetcher(CabinetType.IDEX, [
                make_idex(1, at(12), rub="1000.00", usdt="10.50"),
                make_idex(2, at(15), rub="700.00", usdt="7.00"),
            ]),
            CabinetType.BYBIT: InMemoryRecordFetcher(CabinetType.BYBIT, [
                make_bybit(10, at(9, 5), rub="1000.00", usdt="10.00"),
            ]),
        },
        session_source=InMemoryWorkSessionSource(day_sessions),
        settings=settings,
    )


@pytest.fixture
def client(service):
    """Create test client with an in-memory reconciliation service."""
    app.dependency_overrides[get_reconciliation_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def job_body():
    return {
        "operator_id": 7,
        "period_start": "2024-01-15T00:00:00",
        "period_end": "2024-01-15T23:59:59",
    }


class TestHealth:
    """Tests for health endpoints."""

    def test_app_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_reconciliation_health(self, client):
        response = client.get("/reconciliation/health")
        assert response.json() == {"status": "healthy", "service": "reconciliation"}

    def test_rate_limiter_is_configured(self):
        assert hasattr(app.state, "limiter")


class TestAuthentication:
    """Tests for the bearer API key guard."""

    def test_missing_credentials(self, client, job_body):
        response = client.post("/reconciliation/jobs", json=job_body)
        assert response.status_code in (401, 403)

    def test_invalid_api_key(self, client, job_body):
        response = client.post(
            "/reconciliation/jobs",
            json=job_body,
            headers={"Authorization": "Bearer wrong_key"},
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid API key"

    def test_api_key_not_configured_returns_500(self, client, job_body):
        with patch.dict(os.environ, {"API_KEY": ""}):
            response = client.post(
                "/reconciliation/jobs",
                json=job_body,
                headers={"Authorization": "Bearer some_key"},
            )
        assert response.status_code == 500


class TestJobs:
    """Tests for the reconciliation job endpoints."""

    def test_create_job(self, client, job_body, auth_headers):
        response = client.post("/reconciliation/jobs", json=job_body, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["operator_id"] == 7
        assert data["matched_count"] == 1
        assert data["unmatched_a_count"] == 1
        assert data["unmatched_b_count"] == 0
        assert Decimal(data["gross_profit"]) == Decimal("0.50")
        assert data["match_rate"] == "50.00%"
        assert data["partial_failure"] is False

    def test_create_job_from_work_sessions(self, client, auth_headers):
        body = {
            "work_sessions": [
                {"cabinet_id": 1, "cabinet_type": "idex",
                 "start_time": "2024-01-15T11:00:00", "end_time": "2024-01-15T13:00:00"},
                {"cabinet_id": 2, "cabinet_type": "bybit",
                 "start_time": "2024-01-15T11:00:00", "end_time": "2024-01-15T13:00:00"},
            ],
        }

        response = client.post("/reconciliation/jobs", json=body, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["matched_count"] == 1
        assert response.json()["unmatched_a_count"] == 0

    def test_period_start_after_end(self, client, auth_headers):
        body = {
            "operator_id": 7,
            "period_start": "2024-01-16T00:00:00",
            "period_end": "2024-01-15T00:00:00",
        }

        response = client.post("/reconciliation/jobs", json=body, headers=auth_headers)

        assert response.status_code == 400
        assert "period_start" in response.json()["detail"]

    def test_request_without_source(self, client, auth_headers):
        response = client.post("/reconciliation/jobs", json={}, headers=auth_headers)

        assert response.status_code == 400

    def test_report_json(self, client, job_body, auth_headers):
        response = client.post("/reconciliation/jobs/report", json=job_body, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert len(data["matched_pairs"]) == 1
        assert data["matched_pairs"][0]["record_a"]["id"] == 1
        assert [r["id"] for r in data["unmatched_a"]] == [2]

    def test_report_summary_only(self, client, job_body, auth_headers):
        response = client.post(
            "/reconciliation/jobs/report",
            params={"include_details": False},
            json=job_body,
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert "matched_pairs" not in response.json()

    def test_report_csv(self, client, job_body, auth_headers):
        response = client.post(
            "/reconciliation/jobs/report",
            params={"format": "csv"},
            json=job_body,
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.text.startswith("type,record_a_id")

    def test_report_text(self, client, job_body, auth_headers):
        response = client.post(
            "/reconciliation/jobs/report",
            params={"format": "text"},
            json=job_body,
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert "SHIFT RECONCILIATION REPORT SUMMARY" in response.text

    def test_report_invalid_format(self, client, job_body, auth_headers):
        response = client.post(
            "/reconciliation/jobs/report",
            params={"format": "xml"},
            json=job_body,
            headers=auth_headers,
        )

        assert response.status_code == 400


class TestWindowPreview:
    """Tests for the window preview endpoint."""

    def test_preview(self, client, auth_headers):
        body = {
            "cabinet_windows": [
                {"cabinetId": 1, "cabinetType": "idex",
                 "startDate": "2024-01-15T10:00:00", "endDate": "2024-01-15T18:00:00"},
                {"cabinetId": 2, "cabinetType": "bybit",
                 "startDate": "2024-01-15T10:00:00", "endDate": "2024-01-15T18:00:00"},
                {"cabinetId": 3, "cabinetType": "binance",
                 "startDate": "2024-01-15T10:00:00", "endDate": "2024-01-15T18:00:00"},
            ],
        }

        response = client.post("/reconciliation/windows", json=body, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["idex"][0]["start_time"] == "2024-01-15T10:00:00"
        assert data["bybit"][0]["start_time"] == "2024-01-15T07:00:00"
        assert data["bybit"][0]["end_time"] == "2024-01-15T15:00:00"
        assert data["rejected_entries"] == 1

    def test_preview_malformed(self, client, auth_headers):
        response = client.post(
            "/reconciliation/windows",
            json={"cabinet_windows": "{not json"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json() == {"idex": [], "bybit": [], "rejected_entries": 0}

    def test_preview_requires_auth(self, client):
        response = client.post("/reconciliation/windows", json={"cabinet_windows": "[]"})
        assert response.status_code in (401, 403)


class TestRateLimitKey:
    """Tests for rate limit bucketing."""

    @staticmethod
    def make_request(headers):
        return Request({
            "type": "http",
            "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
            "client": ("10.0.0.5", 5000),
        })

    def test_bearer_token_bucket(self):
        first = rate_limit_key(self.make_request({"Authorization": "Bearer key-one"}))
        again = rate_limit_key(self.make_request({"Authorization": "Bearer key-one"}))
        other = rate_limit_key(self.make_request({"Authorization": "Bearer key-two"}))

        assert first.startswith("key:")
        assert "key-one" not in first
        assert first == again
        assert first != other

    def test_anonymous_uses_client_address(self):
        assert rate_limit_key(self.make_request({})) == "10.0.0.5"
