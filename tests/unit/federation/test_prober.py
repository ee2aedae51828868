"""Unit tests for the Health Prober."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography.hazmat.primitives.asymmetric import ed25519

from pluginfed.federation.prober import HealthProber, HealthResult
from pluginfed.utils.exceptions import RemoteIncompatible
from tests.fakes import ASSET_DOMAIN, INSTANCE_URL, FakeInstance


@pytest.mark.asyncio
async def test_check_health_up(prober: HealthProber, remote_instance: FakeInstance) -> None:
    result = await prober.check_health(INSTANCE_URL + "/")

    assert result.is_up
    assert result.details == "Instance responded successfully"
    assert result.asset_info == {"domain": ASSET_DOMAIN, "namingScheme": "/plugins/author/slug.zip"}
    assert str(remote_instance.requests[-1].url) == f"{INSTANCE_URL}/federation-info"


@pytest.mark.asyncio
async def test_check_health_down(prober: HealthProber, remote_instance: FakeInstance) -> None:
    remote_instance.up = False

    result = await prober.check_health(INSTANCE_URL)

    assert not result.is_up
    assert result.details == "HTTP 503"
    assert result.info is None
    assert result.asset_info is None


@pytest.mark.asyncio
async def test_check_health_without_asset_info(prober: HealthProber, remote_instance: FakeInstance) -> None:
    remote_instance.asset_info = None

    result = await prober.check_health(INSTANCE_URL)

    assert result.is_up
    assert result.asset_info is None


def test_health_result_ignores_non_mapping_asset_info() -> None:
    result = HealthResult(is_up=True, details="ok", info={"assetInfo": "cdn"})

    assert result.asset_info is None
    assert result.to_dict() == {"is_up": True, "details": "ok", "info": {"assetInfo": "cdn"}}


@pytest.mark.asyncio
async def test_check_compatibility(prober: HealthProber) -> None:
    assert await prober.check_compatibility(INSTANCE_URL) == {
        "version": "1.0",
        "features": ["plugins", "ownership"],
    }


@pytest.mark.asyncio
async def test_check_compatibility_down(prober: HealthProber, remote_instance: FakeInstance) -> None:
    remote_instance.up = False

    with pytest.raises(RemoteIncompatible) as exc_info:
        await prober.check_compatibility(INSTANCE_URL)

    assert "HTTP 503" in exc_info.value.message


@pytest.mark.asyncio
async def test_verify_ownership(prober: HealthProber, remote_instance: FakeInstance) -> None:
    """Test a successful challenge-response round trip."""
    assert await prober.verify_ownership(INSTANCE_URL, "alice", remote_instance.public_key_pem)

    request = remote_instance.requests[-1]
    body = json.loads(request.content)
    assert request.method == "POST"
    assert body["username"] == "alice"
    assert body["challenge"] == remote_instance.challenges[-1]


@pytest.mark.asyncio
async def test_verify_ownership_uses_fresh_challenges(prober: HealthProber, remote_instance: FakeInstance) -> None:
    await prober.verify_ownership(INSTANCE_URL, "alice", remote_instance.public_key_b64)
    await prober.verify_ownership(INSTANCE_URL, "alice", remote_instance.public_key_b64)

    assert len(set(remote_instance.challenges)) == 2


@pytest.mark.asyncio
async def test_verify_ownership_wrong_key(prober: HealthProber, remote_instance: FakeInstance) -> None:
    remote_instance.signing_key = ed25519.Ed25519PrivateKey.generate()

    assert not await prober.verify_ownership(INSTANCE_URL, "alice", remote_instance.public_key_pem)


@pytest.mark.asyncio
async def test_verify_ownership_refused(prober: HealthProber, remote_instance: FakeInstance) -> None:
    remote_instance.prove_ownership = False

    assert not await prober.verify_ownership(INSTANCE_URL, "alice", remote_instance.public_key_pem)


@pytest.mark.asyncio
async def test_verify_ownership_malformed_key_on_file(prober: HealthProber) -> None:
    assert not await prober.verify_ownership(INSTANCE_URL, "alice", "not-a-key")


@pytest.mark.asyncio
async def test_verify_ownership_without_signature(logger_manager) -> None:
    remote_client = MagicMock()
    remote_client.post_json = AsyncMock(return_value={"status": "ok"})
    prober = HealthProber(remote_client, logger_manager)

    assert not await prober.verify_ownership(INSTANCE_URL, "alice", "irrelevant")


@pytest.mark.asyncio
async def test_verify_ownership_malformed_signature(logger_manager) -> None:
    remote_client = MagicMock()
    remote_client.post_json = AsyncMock(return_value={"signature": "c2hvcnQ="})
    prober = HealthProber(remote_client, logger_manager)
    key = FakeInstance().public_key_pem

    assert not await prober.verify_ownership(INSTANCE_URL, "alice", key)
