"""
Payroll Recon - Error Handling Tests

Tests for the error codes produced by the global exception handlers.
"""

import json

import pytest
from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError, OperationalError
from starlette.requests import Request

from payroll_recon.utils.error_handling import (
    AuthorizationException,
    ErrorCode,
    http_exception_handler,
    sqlalchemy_exception_handler,
)


def _request() -> Request:
    return Request({
        "type": "http",
        "method": "POST",
        "scheme": "http",
        "server": ("testserver", 80),
        "path": "/api/payroll/periods",
        "query_string": b"",
        "headers": [],
    })


def _detail(response):
    return json.loads(response.body)["detail"]


class TestSQLAlchemyHandler:
    """Tests for database error mapping."""

    @pytest.mark.parametrize(
        "orig, status_code, code",
        [
            ("UNIQUE constraint failed: employees.email", 409, ErrorCode.DUPLICATE_ENTRY),
            ("FOREIGN KEY constraint failed", 422, ErrorCode.DATA_INTEGRITY_ERROR),
            ("NOT NULL constraint failed: payroll_periods.label", 500, ErrorCode.DATA_INTEGRITY_ERROR),
        ],
    )
    async def test_integrity_errors(self, orig, status_code, code):
        exc = IntegrityError("INSERT INTO employees", {}, Exception(orig))
        response = await sqlalchemy_exception_handler(_request(), exc)
        assert response.status_code == status_code
        assert _detail(response)["code"] == code.value

    async def test_operational_error(self):
        exc = OperationalError("SELECT 1", {}, Exception("database is locked"))
        response = await sqlalchemy_exception_handler(_request(), exc)
        assert response.status_code == 500
        assert _detail(response)["code"] == ErrorCode.CONNECTION_ERROR.value


class TestHTTPExceptionHandler:
    """Tests for status to error code mapping."""

    @pytest.mark.parametrize(
        "status_code, code",
        [
            (400, ErrorCode.INVALID_INPUT),
            (401, ErrorCode.UNAUTHORIZED),
            (403, ErrorCode.FORBIDDEN),
            (418, ErrorCode.INTERNAL_ERROR),
        ],
    )
    async def test_codes(self, status_code, code):
        response = await http_exception_handler(_request(), HTTPException(status_code=status_code, detail="nope"))
        assert response.status_code == status_code
        detail = _detail(response)
        assert detail["code"] == code.value
        assert detail["message"] == "nope"

    def test_authorization_default_code(self):
        exc = AuthorizationException("Access denied", required_permission="payroll:manage")
        assert exc.code == ErrorCode.FORBIDDEN
        assert exc.status_code == 403
        assert exc.details == {"required_permission": "payroll:manage"}


class TestAPIErrorCodes:
    """Error codes seen through the HTTP surface."""

    async def test_missing_actor_code(self, client):
        response = await client.get("/api/payroll/periods")
        assert response.status_code == 401
        assert response.json()["detail"]["code"] == ErrorCode.UNAUTHORIZED.value

    async def test_missing_capability_code(self, client, viewer_headers):
        response = await client.get("/api/payroll/periods", headers=viewer_headers)
        assert response.json()["detail"]["code"] == ErrorCode.FORBIDDEN.value
