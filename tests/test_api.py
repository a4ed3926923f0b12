"""Tests for API endpoints."""

import asyncio
import csv
import io
import os

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

# Set environment variables before importing app
os.environ.setdefault("API_KEY", "test_api_key_12345")

from payroll_recon.api import app
from payroll_recon.database import Base, get_async_session_factory, get_db, get_session_factory_dependency
from payroll_recon.reconciliation.api import get_file_reader_dependency


@pytest.fixture
def seeded_api(tmp_path, seed_pay_run, file_reader):
    """Seed a file-backed database and point the app's dependencies at it.

    TestClient runs requests on its own event loop, so every request
    gets a fresh connection from a NullPool engine.
    """
    url = f"sqlite+aiosqlite:///{tmp_path / 'api.db'}"

    async def _seed():
        engine = create_async_engine(url, poolclass=NullPool)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        seeded = await seed_pay_run(get_async_session_factory(engine))
        await engine.dispose()
        return seeded

    seeded = asyncio.run(_seed())
    engine = create_async_engine(url, poolclass=NullPool)
    session_factory = get_async_session_factory(engine)

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_session_factory_dependency] = lambda: session_factory
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_file_reader_dependency] = lambda: file_reader
    yield seeded
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    """Create test client."""
    return TestClient(app)


@pytest.fixture
def caller_headers(auth_headers, seeded_api):
    """Authenticated headers for a preparer in the seeded firm."""
    return {
        **auth_headers,
        "X-Firm-Id": seeded_api.firm.id,
        "X-User-Id": "preparer-1",
        "X-Role": "PREPARER",
    }


class TestHealth:
    """Tests for the health endpoint."""

    def test_health(self, client):
        """Test that health needs no credentials."""
        response = client.get("/reconciliation/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "reconciliation"}


class TestAuthentication:
    """Tests for API key and caller identity checks."""

    def test_missing_bearer(self, client, caller_headers, seeded_api):
        """Test that requests without a bearer token are rejected."""
        headers = {key: value for key, value in caller_headers.items() if key != "Authorization"}
        response = client.get(f"/reconciliation/pay-runs/{seeded_api.pay_run.id}/runs", headers=headers)
        assert response.status_code in (401, 403)

    def test_wrong_api_key(self, client, caller_headers, seeded_api):
        """Test that a wrong API key returns 401."""
        headers = {**caller_headers, "Authorization": "Bearer wrong-key"}
        response = client.get(f"/reconciliation/pay-runs/{seeded_api.pay_run.id}/runs", headers=headers)
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid API key"

    def test_unknown_role(self, client, caller_headers, seeded_api):
        """Test that unknown roles return 400."""
        headers = {**caller_headers, "X-Role": "AUDITOR"}
        response = client.get(f"/reconciliation/pay-runs/{seeded_api.pay_run.id}/runs", headers=headers)
        assert response.status_code == 400
        assert response.json()["detail"] == "Unknown role: AUDITOR"

    def test_system_role_rejected(self, client, caller_headers, seeded_api):
        """Test that API callers cannot act as SYSTEM."""
        headers = {**caller_headers, "X-Role": "system"}
        response = client.post(f"/reconciliation/pay-runs/{seeded_api.pay_run.id}/runs", headers=headers)
        assert response.status_code == 403

    def test_missing_firm_header(self, client, auth_headers, seeded_api):
        """Test that the firm header is required."""
        headers = {**auth_headers, "X-User-Id": "preparer-1", "X-Role": "PREPARER"}
        response = client.get(f"/reconciliation/pay-runs/{seeded_api.pay_run.id}/runs", headers=headers)
        assert response.status_code == 422


class TestReconciliationRuns:
    """Tests for running and reporting reconciliations over HTTP."""

    def test_run_and_list(self, client, caller_headers, seeded_api):
        """Test creating a run and listing it."""
        pay_run_id = seeded_api.pay_run.id
        response = client.post(f"/reconciliation/pay-runs/{pay_run_id}/runs", headers=caller_headers)
        assert response.status_code == 200
        outcome = response.json()
        assert outcome["run_number"] == 1
        assert outcome["check_count"] == 12
        assert outcome["exception_count"] == 0

        response = client.get(f"/reconciliation/pay-runs/{pay_run_id}/runs", headers=caller_headers)
        assert response.status_code == 200
        runs = response.json()
        assert [run["id"] for run in runs] == [outcome["run_id"]]
        assert runs[0]["status"] == "SUCCESS"

    def test_report_formats(self, client, caller_headers, seeded_api):
        """Test JSON, CSV and text reports for a run."""
        outcome = client.post(
            f"/reconciliation/pay-runs/{seeded_api.pay_run.id}/runs", headers=caller_headers,
        ).json()
        report_url = f"/reconciliation/runs/{outcome['run_id']}/report"

        full = client.get(report_url, headers=caller_headers).json()
        assert len(full["check_results"]) == 12
        assert full["statistics"]["passed"] == 10

        summary = client.get(report_url, params={"include_details": "false"}, headers=caller_headers).json()
        assert "check_results" not in summary
        assert summary["run_number"] == 1

        response = client.get(report_url, params={"format": "csv"}, headers=caller_headers)
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        rows = list(csv.reader(io.StringIO(response.text)))
        assert rows[0][:3] == ["run_number", "check_type", "status"]
        assert len(rows) == 13

        response = client.get(report_url, params={"format": "text"}, headers=caller_headers)
        assert response.headers["content-type"].startswith("text/plain")
        assert "PAYROLL RECONCILIATION REPORT" in response.text

    def test_invalid_report_format(self, client, caller_headers):
        """Test that unsupported formats return 400."""
        response = client.get("/reconciliation/runs/any-run/report", params={"format": "xml"}, headers=caller_headers)
        assert response.status_code == 400
        assert response.json()["detail"] == "format must be one of: json, csv, text"

    def test_unknown_run(self, client, caller_headers):
        """Test that unknown runs return a typed 404."""
        response = client.get("/reconciliation/runs/missing-run/report", headers=caller_headers)
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_other_firm_cannot_run(self, client, caller_headers, seeded_api):
        """Test that pay runs are scoped to the caller's firm."""
        headers = {**caller_headers, "X-Firm-Id": "other-firm"}
        response = client.post(f"/reconciliation/pay-runs/{seeded_api.pay_run.id}/runs", headers=headers)
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"


class TestTemplateEndpoints:
    """Tests for the template endpoints."""

    def test_deprecate_template(self, client, caller_headers, seeded_api):
        """Test deprecating a published template."""
        template_id = seeded_api.templates["GL"].template_id
        response = client.post(
            f"/templates/{template_id}/status", json={"status": "DEPRECATED"}, headers=caller_headers,
        )
        assert response.status_code == 200
        body = response.json()
        assert body["id"] == template_id
        assert body["status"] == "DEPRECATED"

    def test_unknown_status(self, client, caller_headers, seeded_api):
        """Test that unknown template statuses fail validation."""
        template_id = seeded_api.templates["GL"].template_id
        response = client.post(
            f"/templates/{template_id}/status", json={"status": "RETIRED"}, headers=caller_headers,
        )
        assert response.status_code == 422

    def test_apply_rejects_wrong_source(self, client, caller_headers, seeded_api):
        """Test that engine validation errors surface as 400 with a code."""
        response = client.post("/templates/apply", headers=caller_headers, json={
            "import_id": seeded_api.imports["REGISTER"].id,
            "source_type": "BANK",
            "source_columns": ["Payee", "Amount"],
            "column_map": {"payee_name": "Payee", "amount": "Amount"},
            "template_name": "Bank layout",
        })
        assert response.status_code == 400
        assert response.json() == {
            "code": "VALIDATION_ERROR",
            "message": "Template source type does not match the import.",
        }
