from __future__ import annotations

import random

import pytest

from mintflow.runtime.errors import UploadError
from mintflow.storage.uploader import RetryPolicy, StorageUploader
from mintflow.testing.fakes import FakeClock, FakeStorageNetwork
from mintflow.util.content_id import compute_content_id


def _uploader(net: FakeStorageNetwork, clock: FakeClock, attempts: int = 5) -> StorageUploader:
    return StorageUploader(
        net,
        policy=RetryPolicy(max_attempts=attempts, backoff_base_ms=100, backoff_cap_ms=1_000),
        sleep=clock.sleep,
        rng=random.Random(7),
    )


def test_three_timeouts_then_success_makes_exactly_four_calls() -> None:
    net = FakeStorageNetwork(["timeout", "timeout", "5xx"])
    clock = FakeClock()

    ref = _uploader(net, clock).upload(b"image", name="image.png")

    assert net.put_count == 4
    assert len(clock.sleeps) == 3
    assert ref.content_id == compute_content_id(b"image")
    assert ref.uri == f"ipfs://{ref.content_id}"


def test_exhausted_retries_are_retryable_but_not_transient() -> None:
    net = FakeStorageNetwork(["timeout"] * 10)
    with pytest.raises(UploadError) as ei:
        _uploader(net, FakeClock(), attempts=3).upload(b"image")
    assert net.put_count == 3
    assert ei.value.reason == "retries_exhausted"
    assert ei.value.retryable is True
    assert ei.value.transient is False


def test_rejection_is_not_retried() -> None:
    net = FakeStorageNetwork(["reject"])
    clock = FakeClock()
    with pytest.raises(UploadError) as ei:
        _uploader(net, clock).upload(b"image")
    assert net.put_count == 1
    assert clock.sleeps == []
    assert ei.value.reason == "rejected_by_storage"
    assert ei.value.retryable is False


def test_network_returning_another_cid_is_terminal() -> None:
    net = FakeStorageNetwork(["wrong_cid"])
    with pytest.raises(UploadError) as ei:
        _uploader(net, FakeClock()).upload(b"image")
    assert ei.value.reason == "cid_mismatch"
    assert ei.value.retryable is False


def test_backoff_is_capped_full_jitter() -> None:
    policy = RetryPolicy(max_attempts=10, backoff_base_ms=100, backoff_cap_ms=1_000)
    rng = random.Random(1)
    for attempt in range(1, 10):
        delay = policy.backoff_ms(attempt, rng)
        assert 0 <= delay <= min(1_000, 100 * 2 ** (attempt - 1))


def test_is_uploaded_compares_local_content_id() -> None:
    up = _uploader(FakeStorageNetwork(), FakeClock())
    ref = StorageUploader.reference_for(b"abc")
    assert up.is_uploaded(b"abc", ref)
    assert not up.is_uploaded(b"abd", ref)
    assert not up.is_uploaded(b"abc", None)
