"""Tests for X-Request-ID middleware.

Tests cover:
- Request ID generation when missing
- Request ID preservation when valid
- Request ID normalization (UUID lowercase)
- Request ID replacement when invalid
- Request ID in error response body
"""

from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient

from converse.middleware.request_id import (
    generate_request_id,
    is_valid_request_id,
    normalize_request_id,
)


class TestRequestIdMiddleware:
    """Tests for X-Request-ID middleware."""

    def test_request_id_generated_when_missing(self, client: TestClient):
        """Request ID is generated when not provided."""
        response = client.get("/health")

        assert response.status_code == 200
        UUID(response.headers["X-Request-ID"])  # Raises if invalid

    def test_request_id_preserved_when_valid(self, client: TestClient):
        """Valid non-UUID request IDs are preserved."""
        response = client.get("/health", headers={"X-Request-ID": "abc_def-123"})

        assert response.headers["X-Request-ID"] == "abc_def-123"

    def test_request_id_uuid_normalized_to_lowercase(self, client: TestClient):
        """UUID request IDs are normalized to lowercase."""
        response = client.get(
            "/health", headers={"X-Request-ID": "550E8400-E29B-41D4-A716-446655440000"}
        )

        assert response.headers["X-Request-ID"] == "550e8400-e29b-41d4-a716-446655440000"

    @pytest.mark.parametrize("invalid_id", ["bad id with spaces", "a" * 200, "semi;colon"])
    def test_request_id_replaced_when_invalid(self, client: TestClient, invalid_id: str):
        """Invalid or oversized request IDs are replaced with a fresh UUID."""
        response = client.get("/health", headers={"X-Request-ID": invalid_id})

        new_id = response.headers["X-Request-ID"]
        assert new_id != invalid_id
        UUID(new_id)

    def test_error_response_includes_request_id_in_body(self, client: TestClient):
        """Error responses include request_id in the body, matching the header."""
        response = client.get(f"/messages/{uuid4()}")

        assert response.status_code == 404
        data = response.json()
        assert data["error"]["request_id"] == response.headers["X-Request-ID"]

    def test_request_id_present_on_validation_failure(self, client: TestClient):
        response = client.post("/conversations", content="{", headers={"content-type": "application/json"})

        assert response.status_code == 400
        assert "X-Request-ID" in response.headers


class TestRequestIdValidation:
    """Tests for request ID validation edge cases."""

    @pytest.mark.parametrize(
        "value",
        [
            "request.id.with.dots",
            "request_id_with_underscores",
            "request-id-with-hyphens",
            "a" * 128,
            "550e8400-e29b-41d4-a716-446655440000",
        ],
    )
    def test_valid(self, value: str):
        assert is_valid_request_id(value)

    @pytest.mark.parametrize("value", ["", "a" * 129, "has space", "slash/inside", "ünïcode"])
    def test_invalid(self, value: str):
        assert not is_valid_request_id(value)

    def test_normalize_leaves_non_uuid_alone(self):
        assert normalize_request_id("Mixed-Case.ID") == "Mixed-Case.ID"

    def test_generated_ids_are_unique_uuids(self):
        first, second = generate_request_id(), generate_request_id()

        assert first != second
        UUID(first)
