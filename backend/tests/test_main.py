"""
Unit tests for the fee estimation endpoints in main.py

Tests cover:
- POST /api/estimate: single operation estimates and input validation
- POST /api/estimate/batch: batch estimates from simulation properties
- GET /api/policy and GET /api/health
"""

import os
import sys
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fee_estimator import reset_fee_policy
from main import app

ENV_VARS = [
    "MINIMAL_FEE_MUTEZ",
    "MINIMAL_FEE_PER_BYTE_MUTEZ",
    "MINIMAL_FEE_PER_GAS_MUTEZ",
    "GAS_BUFFER",
    "FEE_PER_STORAGE_BYTE_MUTEZ",
]


@pytest.fixture
def client(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    reset_fee_policy()
    yield TestClient(app)
    reset_fee_policy()


TRANSFER = {"milligas_limit": 10400, "storage_limit": 0, "op_size": 150, "fee_per_storage_byte_mutez": 1}


class TestEstimateRoute:
    """Tests for POST /api/estimate."""

    def test_estimate_transfer(self, client):
        response = client.post("/api/estimate", json=TRANSFER)

        assert response.status_code == 200
        data = response.json()
        assert data["gas_limit"] == 111
        assert data["operation_fee_mutez"] == pytest.approx(161.04)
        assert data["minimal_fee_mutez"] == 262
        assert data["suggested_fee_mutez"] == 362
        assert data["burn_fee_mutez"] == 0
        assert data["total_cost"] == 262
        assert data["using_base_fee_mutez"] is None
        assert data["report"].startswith("## Fee Estimation")

    def test_estimate_with_base_fee(self, client):
        response = client.post("/api/estimate", json={**TRANSFER, "base_fee_mutez": 500})

        assert response.status_code == 200
        assert response.json()["using_base_fee_mutez"] == 662

    def test_freed_storage(self, client):
        response = client.post(
            "/api/estimate", json={**TRANSFER, "storage_limit": -50, "fee_per_storage_byte_mutez": 250}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["storage_limit_raw"] == -50
        assert data["storage_limit"] == 0
        assert data["burn_fee_mutez"] == 0

    def test_default_storage_rate(self, client):
        payload = {"milligas_limit": 10400, "storage_limit": 10, "op_size": 150}
        response = client.post("/api/estimate", json=payload)

        assert response.status_code == 200
        data = response.json()
        assert data["fee_per_storage_byte_mutez"] == 250
        assert data["burn_fee_mutez"] == 2500
        assert data["total_cost"] == 262 + 2500

    @pytest.mark.parametrize(
        "field,value",
        [
            ("milligas_limit", -1),
            ("op_size", -5),
            ("op_size", 1.5),
            ("base_fee_mutez", -100),
            ("fee_per_storage_byte_mutez", -1),
        ],
    )
    def test_rejects_invalid_inputs(self, client, field, value):
        response = client.post("/api/estimate", json={**TRANSFER, field: value})

        assert response.status_code == 422

    def test_rejects_missing_size(self, client):
        payload = {"milligas_limit": 10400, "storage_limit": 0}
        response = client.post("/api/estimate", json=payload)

        assert response.status_code == 422

    def test_internal_error_returns_500(self, client):
        with patch("main.estimate_fees", side_effect=RuntimeError("bad policy")):
            response = client.post("/api/estimate", json=TRANSFER)

        assert response.status_code == 500
        assert "bad policy" in response.json()["detail"]


class TestBatchRoute:
    """Tests for POST /api/estimate/batch."""

    def test_batch_estimate(self, client):
        payload = {
            "operations": [
                {"milligasLimit": 10400, "storageLimit": 0, "opSize": 150, "minimalFeePerStorageByteMutez": 1},
                {"milligasLimit": 1000, "storageLimit": 20, "opSize": 10, "baseFeeMutez": 500},
            ]
        }
        response = client.post("/api/estimate/batch", json=payload)

        assert response.status_code == 200
        data = response.json()
        assert len(data["operations"]) == 2
        assert data["operations"][0]["minimal_fee_mutez"] == 262
        assert data["operations"][1]["gas_limit"] == 101
        assert data["operations"][1]["burn_fee_mutez"] == 5000
        assert data["total_gas_limit"] == 212
        assert data["total_storage_limit"] == 20
        assert data["total_burn_fee_mutez"] == 5000

    def test_batch_accepts_snake_case(self, client):
        payload = {"operations": [{"milligas_limit": 10400, "storage_limit": 0, "op_size": 150}]}
        response = client.post("/api/estimate/batch", json=payload)

        assert response.status_code == 200
        assert response.json()["total_minimal_fee_mutez"] == 262

    def test_empty_batch_returns_400(self, client):
        response = client.post("/api/estimate/batch", json={"operations": []})

        assert response.status_code == 400

    def test_batch_rejects_negative_gas(self, client):
        payload = {"operations": [{"milligasLimit": -1, "storageLimit": 0, "opSize": 150}]}
        response = client.post("/api/estimate/batch", json=payload)

        assert response.status_code == 422


class TestOverflowingInputs:
    """Finite inputs whose figures overflow are rejected with 422."""

    def test_estimate_overflowing_burn_fee(self, client):
        payload = {"milligas_limit": 0, "storage_limit": 1e307, "op_size": 1, "fee_per_storage_byte_mutez": 250}
        response = client.post("/api/estimate", json=payload)

        assert response.status_code == 422
        assert "burn_fee_mutez" in response.json()["detail"]

    def test_batch_overflowing_burn_fee(self, client):
        payload = {
            "operations": [
                {"milligasLimit": 10400, "storageLimit": 0, "opSize": 150},
                {"milligasLimit": 0, "storageLimit": 1e307, "opSize": 1, "minimalFeePerStorageByteMutez": 250},
            ]
        }
        response = client.post("/api/estimate/batch", json=payload)

        assert response.status_code == 422
        assert response.json()["detail"].startswith("Operation 1")


class TestPolicyAndHealthRoutes:
    """Tests for GET /api/policy and GET /api/health."""

    def test_default_policy(self, client):
        response = client.get("/api/policy")

        assert response.status_code == 200
        assert response.json() == {
            "minimal_fee_mutez": 100,
            "minimal_fee_per_byte_mutez": 1,
            "minimal_fee_per_gas_mutez": 0.1,
            "gas_buffer": 100,
            "fee_per_storage_byte_mutez": 250,
        }

    def test_policy_from_environment(self, client, monkeypatch):
        monkeypatch.setenv("MINIMAL_FEE_MUTEZ", "200")
        reset_fee_policy()

        response = client.get("/api/policy")

        assert response.json()["minimal_fee_mutez"] == 200

    def test_health_check(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
