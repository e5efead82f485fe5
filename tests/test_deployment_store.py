from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from mintflow.pipeline.models import DeploymentRecord, DeploymentState
from mintflow.runtime.deployment_store import SqliteDeploymentStore
from mintflow.runtime.errors import DeploymentBusyError, StaleRecordError, StoreError
from mintflow.runtime.sqlite_db import SqliteDB

DAY_MS = 24 * 60 * 60 * 1000


def _store(tmp_path: Path) -> SqliteDeploymentStore:
    return SqliteDeploymentStore(db=SqliteDB(path=str(tmp_path / "mintflow.db")))


def _initial(did: str = "dep-1", now: int = 1_000) -> DeploymentRecord:
    return DeploymentRecord(
        deployment_id=did,
        state=DeploymentState.CREATED,
        asset_hash="a" * 64,
        fields_hash="f" * 64,
        created_ms=now,
        updated_ms=now,
    )


def test_claim_creates_then_cas_bumps_version(tmp_path: Path) -> None:
    store = _store(tmp_path)
    rec = store.claim(_initial(), owner="w1", ttl_ms=10_000, now_ms=1_000)
    assert rec.version == 1

    nxt = store.compare_and_swap(
        replace(rec, state=DeploymentState.VALIDATED), expected_version=1, lease_owner="w1", lease_ttl_ms=10_000, now_ms=1_100
    )
    assert nxt.version == 2
    assert nxt.state == DeploymentState.VALIDATED
    assert store.load("dep-1") == nxt


def test_stale_write_is_rejected(tmp_path: Path) -> None:
    store = _store(tmp_path)
    rec = store.claim(_initial(), owner="w1", ttl_ms=10_000, now_ms=1_000)
    store.compare_and_swap(replace(rec, state=DeploymentState.VALIDATED), expected_version=1)

    with pytest.raises(StaleRecordError):
        store.compare_and_swap(replace(rec, state=DeploymentState.IMAGE_UPLOADED), expected_version=1)
    assert store.load("dep-1").state == DeploymentState.VALIDATED


def test_live_lease_excludes_other_owners_until_it_expires(tmp_path: Path) -> None:
    store = _store(tmp_path)
    rec = store.claim(_initial(), owner="w1", ttl_ms=10_000, now_ms=1_000)

    with pytest.raises(DeploymentBusyError):
        store.claim(_initial(), owner="w2", ttl_ms=10_000, now_ms=5_000)

    # Expired: w2 takes over, and w1 can no longer write.
    taken = store.claim(_initial(), owner="w2", ttl_ms=10_000, now_ms=20_000)
    assert taken.version == rec.version
    with pytest.raises(StaleRecordError):
        store.compare_and_swap(
            replace(rec, state=DeploymentState.VALIDATED), expected_version=rec.version, lease_owner="w1", now_ms=20_001
        )


def test_released_lease_can_be_claimed_immediately(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.claim(_initial(), owner="w1", ttl_ms=10_000, now_ms=1_000)
    store.release_lease("dep-1", "w1")
    assert store.claim(_initial(), owner="w2", ttl_ms=10_000, now_ms=1_001).deployment_id == "dep-1"


def test_cancel_flag_does_not_bump_version(tmp_path: Path) -> None:
    store = _store(tmp_path)
    rec = store.claim(_initial(), owner="w1", ttl_ms=10_000, now_ms=1_000)

    assert store.request_cancel("dep-1") is True
    assert store.request_cancel("missing") is False
    assert store.is_cancel_requested("dep-1") is True

    nxt = store.compare_and_swap(
        replace(rec, state=DeploymentState.VALIDATED), expected_version=rec.version, lease_owner="w1", now_ms=1_001
    )
    assert nxt.cancel_requested is True
    assert nxt.version == rec.version + 1


def test_delete_refuses_while_leased(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.claim(_initial(), owner="w1", ttl_ms=10_000, now_ms=1_000)

    with pytest.raises(DeploymentBusyError):
        store.delete("dep-1", now_ms=2_000)
    assert store.delete("dep-1", now_ms=50_000) is True
    assert store.load("dep-1") is None
    assert store.delete("dep-1", now_ms=50_000) is False


def test_purge_removes_old_terminal_records_only(tmp_path: Path) -> None:
    store = _store(tmp_path)
    now = 100 * DAY_MS

    def _put(did: str, **changes) -> None:
        rec = store.claim(_initial(did, now=1_000), owner="w", ttl_ms=1, now_ms=1_000)
        store.compare_and_swap(replace(rec, **changes), expected_version=rec.version, now_ms=1_000)
        store.release_lease(did, "w")

    _put("confirmed", state=DeploymentState.CONFIRMED)
    _put("cancelled", state=DeploymentState.CANCELLED)
    _put("failed-terminal", state=DeploymentState.FAILED, retryable=False)
    _put("failed-retryable", state=DeploymentState.FAILED, retryable=True)
    _put("in-flight", state=DeploymentState.SUBMITTED)

    assert store.purge_expired(retention_ms=30 * DAY_MS, now_ms=now) == 3
    assert store.load("confirmed") is None
    assert store.load("cancelled") is None
    assert store.load("failed-terminal") is None
    assert store.load("failed-retryable") is not None
    assert store.load("in-flight") is not None


def test_purge_keeps_recent_records(tmp_path: Path) -> None:
    store = _store(tmp_path)
    rec = store.claim(_initial(), owner="w", ttl_ms=1, now_ms=1_000)
    store.compare_and_swap(replace(rec, state=DeploymentState.CONFIRMED), expected_version=1, now_ms=1_000)
    assert store.purge_expired(retention_ms=30 * DAY_MS, now_ms=2_000) == 0


def test_create_refuses_an_existing_id(tmp_path: Path) -> None:
    store = _store(tmp_path)
    rec = store.create(_initial(), now_ms=1_000)
    assert rec.version == 1
    assert rec.state == DeploymentState.CREATED

    with pytest.raises(StoreError):
        store.create(_initial(), now_ms=2_000)
    assert store.load("dep-1").version == 1


def test_acquire_lease_on_created_record(tmp_path: Path) -> None:
    store = _store(tmp_path)
    with pytest.raises(StoreError):
        store.acquire_lease("dep-1", "w1", 10_000, now_ms=1_000)

    store.create(_initial(), now_ms=1_000)
    rec = store.acquire_lease("dep-1", "w1", 10_000, now_ms=1_000)
    assert rec.version == 1

    with pytest.raises(DeploymentBusyError):
        store.acquire_lease("dep-1", "w2", 10_000, now_ms=5_000)
    # Renewal by the holder, then takeover after expiry.
    store.acquire_lease("dep-1", "w1", 10_000, now_ms=5_000)
    with pytest.raises(DeploymentBusyError):
        store.acquire_lease("dep-1", "w2", 10_000, now_ms=14_000)
    assert store.acquire_lease("dep-1", "w2", 10_000, now_ms=15_001).deployment_id == "dep-1"
