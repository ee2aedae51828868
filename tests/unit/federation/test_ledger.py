"""Unit tests for the Trust Ledger."""

from __future__ import annotations

from typing import List

import pytest
from cryptography.hazmat.primitives.asymmetric import ed25519
from sqlalchemy import select

from pluginfed.federation.ledger import TrustLedger
from pluginfed.federation.prober import HealthResult
from pluginfed.federation.registry import SourceRegistry
from pluginfed.models import Source, SourceVerification
from pluginfed.utils.exceptions import SourceNotFound
from tests.fakes import ASSET_DOMAIN, FakeInstance


async def _attempts(database_manager, source_id: str) -> List[SourceVerification]:
    async with database_manager.session() as session:
        return list(session.execute(
            select(SourceVerification)
            .where(SourceVerification.source_id == source_id)
            .order_by(SourceVerification.id)
        ).scalars())


@pytest.mark.asyncio
async def test_record_attempt(ledger: TrustLedger, pending_source: str, database_manager, clock) -> None:
    health = HealthResult(is_up=True, details="ok", info={"version": "1.0"})

    attempt = await ledger.record_attempt(pending_source, health, key_verified=False, verification_type="periodic")

    assert attempt.result == "failure"
    assert attempt.verification_type == "periodic"
    assert attempt.verifier == "system"
    assert attempt.verified_at == clock.now
    assert attempt.details == {"health": health.to_dict(), "key_verified": False}
    assert len(await _attempts(database_manager, pending_source)) == 1


@pytest.mark.asyncio
async def test_record_attempt_success_requires_both(ledger: TrustLedger, pending_source: str) -> None:
    up = HealthResult(is_up=True, details="ok")
    down = HealthResult(is_up=False, details="HTTP 503")

    assert (await ledger.record_attempt(pending_source, up, True)).result == "success"
    assert (await ledger.record_attempt(pending_source, down, True)).result == "failure"
    assert (await ledger.record_attempt(pending_source, up, False)).result == "failure"


@pytest.mark.asyncio
async def test_record_attempt_rejects_unknown_type(ledger: TrustLedger, pending_source: str) -> None:
    with pytest.raises(ValueError):
        await ledger.record_attempt(pending_source, HealthResult(True, "ok"), True, "whenever")


@pytest.mark.asyncio
async def test_promote(ledger: TrustLedger, registry: SourceRegistry, pending_source: str) -> None:
    assert await ledger.promote(pending_source)
    assert not await ledger.promote(pending_source)

    source = await registry.get_source(pending_source)
    assert source.status == "verified"
    assert source.trust_score == 0.5


@pytest.mark.asyncio
async def test_promote_unknown_source(ledger: TrustLedger) -> None:
    with pytest.raises(SourceNotFound):
        await ledger.promote("nobody@nowhere.example")


@pytest.mark.asyncio
async def test_up_without_ownership_proof_stays_pending(
        ledger: TrustLedger,
        registry: SourceRegistry,
        remote_instance: FakeInstance,
        pending_source: str,
        database_manager,
) -> None:
    """alice is up but cannot prove ownership: she stays pending at 0.0."""
    remote_instance.prove_ownership = False

    assert not await ledger.verify_source(pending_source, "initial")

    source = await registry.get_source(pending_source)
    assert source.status == "pending"
    assert source.trust_score == 0.0
    attempts = await _attempts(database_manager, pending_source)
    assert [a.result for a in attempts] == ["failure"]
    assert attempts[0].details["health"]["is_up"] is True
    assert attempts[0].details["key_verified"] is False


@pytest.mark.asyncio
async def test_later_ownership_proof_promotes(
        ledger: TrustLedger,
        registry: SourceRegistry,
        remote_instance: FakeInstance,
        pending_source: str,
        database_manager,
) -> None:
    """alice later proves ownership: verified at 0.5 with exactly one success."""
    remote_instance.prove_ownership = False
    await ledger.verify_source(pending_source, "initial")
    remote_instance.prove_ownership = True

    assert await ledger.verify_source(pending_source)

    source = await registry.get_source(pending_source)
    assert source.status == "verified"
    assert source.trust_score == 0.5
    attempts = await _attempts(database_manager, pending_source)
    assert [a.result for a in attempts] == ["failure", "success"]
    assert attempts[1].verification_type == "manual"


@pytest.mark.asyncio
async def test_verify_source_stores_asset_info(
        ledger: TrustLedger, registry: SourceRegistry, pending_source: str
) -> None:
    await ledger.verify_source(pending_source)

    source = await registry.get_source(pending_source)
    assert source.asset_domain == ASSET_DOMAIN
    assert source.asset_naming_scheme == "/plugins/author/slug.zip"


@pytest.mark.asyncio
async def test_verify_source_down_skips_ownership(
        ledger: TrustLedger, remote_instance: FakeInstance, pending_source: str, database_manager
) -> None:
    remote_instance.up = False

    assert not await ledger.verify_source(pending_source)

    assert remote_instance.challenges == []
    attempts = await _attempts(database_manager, pending_source)
    assert attempts[0].details["health"]["details"] == "HTTP 503"


@pytest.mark.asyncio
async def test_verify_source_wrong_key_keeps_verified_status(
        ledger: TrustLedger, registry: SourceRegistry, remote_instance: FakeInstance, verified_source: str
) -> None:
    """A failed re-verification is recorded but never demotes by itself."""
    remote_instance.signing_key = ed25519.Ed25519PrivateKey.generate()

    assert not await ledger.verify_source(verified_source)

    source = await registry.get_source(verified_source)
    assert source.status == "verified"
    assert source.trust_score == 0.5


@pytest.mark.asyncio
async def test_verify_source_recovers_error_source(
        ledger: TrustLedger, registry: SourceRegistry, verified_source: str, database_manager
) -> None:
    async with database_manager.session() as session:
        source = session.execute(select(Source).where(Source.id == verified_source)).scalar_one()
        source.status = "error"
        source.trust_score = 0.4

    assert await ledger.verify_source(verified_source)

    source = await registry.get_source(verified_source)
    assert source.status == "verified"
    assert source.trust_score == 0.5


@pytest.mark.asyncio
async def test_verify_unknown_source(ledger: TrustLedger) -> None:
    with pytest.raises(SourceNotFound):
        await ledger.verify_source("nobody@nowhere.example")


@pytest.mark.asyncio
async def test_custom_verifier_and_baseline(
        database_manager, registry, prober, logger_manager, clock, pending_source: str
) -> None:
    ledger = TrustLedger(
        database_manager, registry, prober, logger_manager, verifier="mirror-admin", baseline=0.7, clock=clock
    )

    assert await ledger.verify_source(pending_source)

    status = await registry.get_status(pending_source)
    assert status["trust_score"] == 0.7
    assert status["last_verification"]["verifier"] == "mirror-admin"
