"""
Payroll Recon - API Tests

End-to-end tests through the HTTP surface.
"""

import pytest


def _upload(content: bytes):
    return {
        "file": (
            "payroll.xlsx",
            content,
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        )
    }


# ===========================================
# HEALTH AND ACCESS
# ===========================================

class TestHealthAndAccess:
    """Tests for health and capability checks."""

    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_missing_actor_is_unauthorized(self, client):
        response = await client.get("/api/payroll/periods")
        assert response.status_code == 401

    async def test_missing_capability_is_forbidden(self, client, viewer_headers):
        response = await client.get("/api/payroll/periods", headers=viewer_headers)
        assert response.status_code == 403
        assert "payroll:manage" in response.json()["detail"]["message"]

    async def test_master_data_needs_its_own_capability(self, client):
        headers = {"X-Actor-Id": "operator-2", "X-Actor-Capabilities": "payroll:manage"}
        response = await client.post(
            "/api/payroll/employees",
            json={"full_name": "Ali Raza"},
            headers=headers,
        )
        assert response.status_code == 403


# ===========================================
# PERIODS
# ===========================================

class TestPeriodEndpoints:
    """Tests for period endpoints."""

    async def test_create_and_get(self, client, manager_headers):
        response = await client.post(
            "/api/payroll/periods",
            json={"period_start": "2026-02-01", "period_end": "2026-02-28"},
            headers=manager_headers,
        )
        assert response.status_code == 201
        period = response.json()
        assert period["status"] == "DRAFT"

        response = await client.get(f"/api/payroll/periods/{period['id']}", headers=manager_headers)
        assert response.status_code == 200
        assert response.json()["period_end"] == "2026-02-28"

        listing = (await client.get("/api/payroll/periods", headers=manager_headers)).json()
        assert listing["total"] == 1

    async def test_reversed_dates_rejected(self, client, manager_headers):
        response = await client.post(
            "/api/payroll/periods",
            json={"period_start": "2026-02-28", "period_end": "2026-02-01"},
            headers=manager_headers,
        )
        assert response.status_code == 422

    async def test_unknown_period(self, client, manager_headers):
        response = await client.get(
            "/api/payroll/periods/00000000-0000-0000-0000-000000000000",
            headers=manager_headers,
        )
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "PERIOD_NOT_FOUND"

    async def test_approve_draft_is_conflict(self, client, manager_headers):
        period = (await client.post(
            "/api/payroll/periods",
            json={"period_start": "2026-02-01", "period_end": "2026-02-28"},
            headers=manager_headers,
        )).json()
        response = await client.post(
            f"/api/payroll/periods/{period['id']}/approve",
            headers=manager_headers,
        )
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "INVALID_TRANSITION"


# ===========================================
# IMPORT TO DISPATCH
# ===========================================

class TestPayrollFlow:
    """Import, recalculate, approve, render and send through the API."""

    async def test_import_workbook(self, client, manager_headers, payroll_workbook):
        response = await client.post(
            "/api/payroll/import",
            files=_upload(payroll_workbook),
            headers=manager_headers,
        )
        assert response.status_code == 200
        summary = response.json()
        assert sorted(summary["created_period_keys"]) == ["01/2026", "02/2026"]
        assert summary["values_upserted"] > 0
        assert summary["mappings"]["unresolved"] == 2

        batches = (await client.get("/api/payroll/import/batches", headers=manager_headers)).json()
        assert len(batches) == 1

    async def test_import_only_selected_period(self, client, manager_headers, payroll_workbook):
        response = await client.post(
            "/api/payroll/import",
            files=_upload(payroll_workbook),
            data={"period_keys": "02/2026"},
            headers=manager_headers,
        )
        assert response.status_code == 200
        assert response.json()["imported_period_keys"] == ["02/2026"]

    async def test_import_rejects_garbage(self, client, manager_headers):
        response = await client.post(
            "/api/payroll/import",
            files=_upload(b"not a workbook"),
            headers=manager_headers,
        )
        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "INVALID_WORKBOOK"

    async def test_full_flow(self, client, manager_headers, fake_provider, payroll_workbook):
        for name, email in (("Ali Raza", "ali@example.com"), ("Sara Ahmed", "sara@example.com")):
            response = await client.post(
                "/api/payroll/employees",
                json={"full_name": name, "email": email},
                headers=manager_headers,
            )
            assert response.status_code == 201

        summary = (await client.post(
            "/api/payroll/import",
            files=_upload(payroll_workbook),
            headers=manager_headers,
        )).json()
        assert summary["mappings"]["auto_matched"] == 2
        period_id = summary["period_ids"]["02/2026"]

        response = await client.post(
            f"/api/payroll/periods/{period_id}/recalculate",
            headers=manager_headers,
        )
        assert response.status_code == 200
        result = response.json()
        assert result["status"] == "CALCULATED"
        assert result["identities"] == 2

        receipts = (await client.get(
            f"/api/payroll/periods/{period_id}/receipts",
            headers=manager_headers,
        )).json()
        assert {r["payroll_name"] for r in receipts} == {"Ali Raza", "Sara Ahmed"}
        assert all(r["status"] == "READY" for r in receipts)

        response = await client.get(
            f"/api/payroll/periods/{period_id}/receipts/{receipts[0]['id']}/pdf",
            headers=manager_headers,
        )
        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert response.content.startswith(b"%PDF")

        response = await client.post(
            f"/api/payroll/periods/{period_id}/approve",
            json={"comment": "Checked"},
            headers=manager_headers,
        )
        assert response.status_code == 200
        assert response.json()["approved_by"] == "operator-1"

        response = await client.put(
            "/api/payroll/config",
            json={"template_id": "tmpl-payroll"},
            headers=manager_headers,
        )
        assert response.status_code == 200

        response = await client.post(
            f"/api/payroll/periods/{period_id}/send",
            headers=manager_headers,
        )
        assert response.status_code == 200
        assert response.json()["status"] == "SENT"
        assert len(fake_provider.requests) == 2

        events = (await client.get(
            f"/api/payroll/periods/{period_id}/events",
            headers=manager_headers,
        )).json()
        assert events[0]["action"] == "APPROVE"
        assert events[0]["comment"] == "Checked"

    async def test_send_without_template_is_unavailable(self, client, manager_headers):
        period = (await client.post(
            "/api/payroll/periods",
            json={"period_start": "2026-02-01", "period_end": "2026-02-28"},
            headers=manager_headers,
        )).json()
        await client.put(
            f"/api/payroll/periods/{period['id']}/inputs",
            json={"payroll_name": "Ali Raza", "component_key": "BASIC_SALARY", "amount": "50000"},
            headers=manager_headers,
        )
        await client.post(f"/api/payroll/periods/{period['id']}/recalculate", headers=manager_headers)
        await client.post(f"/api/payroll/periods/{period['id']}/approve", headers=manager_headers)

        response = await client.post(f"/api/payroll/periods/{period['id']}/send", headers=manager_headers)
        assert response.status_code == 503
        assert response.json()["detail"]["code"] == "CONFIGURATION_ERROR"


# ===========================================
# MASTER DATA
# ===========================================

class TestMasterDataEndpoints:
    """Tests for master data endpoints."""

    async def test_seed_is_idempotent(self, client, manager_headers):
        first = (await client.post("/api/payroll/seed", headers=manager_headers)).json()
        second = (await client.post("/api/payroll/seed", headers=manager_headers)).json()
        assert first["salary_heads"] > 0
        assert second == {"salary_heads": 0, "travel_tiers": 0}

        heads = (await client.get("/api/payroll/salary-heads", headers=manager_headers)).json()
        assert any(h["code"] == "BASIC_SALARY" and h["is_system"] for h in heads)

    async def test_financial_year_with_gap_rejected(self, client, manager_headers):
        response = await client.post(
            "/api/payroll/financial-years",
            json={
                "label": "FY 2025-26",
                "start_date": "2025-07-01",
                "end_date": "2026-06-30",
                "brackets": [
                    {"income_from": "0", "income_to": "600000", "tax_rate": "0"},
                    {"income_from": "700000", "tax_rate": "0.05"},
                ],
            },
            headers=manager_headers,
        )
        assert response.status_code == 422

    async def test_config_missing_is_not_found(self, client, manager_headers):
        response = await client.get("/api/payroll/config", headers=manager_headers)
        assert response.status_code == 404

    @pytest.mark.parametrize("email", ["not-an-email", "a@"])
    async def test_employee_email_validated(self, client, manager_headers, email):
        response = await client.post(
            "/api/payroll/employees",
            json={"full_name": "Ali Raza", "email": email},
            headers=manager_headers,
        )
        assert response.status_code == 422
