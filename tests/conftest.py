from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import pytest

# Ensure local "src/" takes precedence over any globally-installed "mintflow" package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from mintflow.chain.signing import SigningGateway  # noqa: E402
from mintflow.chain.submission import SubmissionTracker  # noqa: E402
from mintflow.chain.tx_builder import TransactionBuilder  # noqa: E402
from mintflow.pipeline.models import Asset, Attribute, Creator, TokenFields  # noqa: E402
from mintflow.pipeline.orchestrator import DeploymentOrchestrator  # noqa: E402
from mintflow.runtime.deployment_store import SqliteDeploymentStore  # noqa: E402
from mintflow.runtime.sqlite_db import SqliteDB  # noqa: E402
from mintflow.storage.uploader import RetryPolicy, StorageUploader  # noqa: E402
from mintflow.testing.fakes import FakeChainRpc, FakeClock, FakeStorageNetwork  # noqa: E402
from mintflow.testing.sigtools import TestSigner  # noqa: E402

# Smallest valid PNG (1x1, transparent).
PNG_1X1 = bytes.fromhex(
    "89504e470d0a1a0a0000000d4948445200000001000000010806000000"
    "1f15c4890000000d49444154789c6360000002000100e221bc330000000049454e44ae426082"
)


def png_asset(data: bytes = PNG_1X1) -> Asset:
    return Asset(data=data, mime_type="image/png", declared_size=len(data))


def token_fields(**overrides: Any) -> TokenFields:
    base = dict(
        name="Harbor Lights #1",
        symbol="HARB",
        description="Night view of the harbor",
        seller_fee_basis_points=500,
        creators=(Creator("creator-a", 60), Creator("creator-b", 40)),
        attributes=(Attribute("palette", "blue"), Attribute("edition", 1)),
    )
    base.update(overrides)
    return TokenFields(**base)


@dataclass
class Pipeline:
    orchestrator: DeploymentOrchestrator
    store: SqliteDeploymentStore
    storage: FakeStorageNetwork
    rpc: FakeChainRpc
    signer: TestSigner
    clock: FakeClock
    db_path: str

    def rebuild(self, **kwargs: Any) -> "Pipeline":
        """A second orchestrator over the same DB and fakes (a fresh process after a crash)."""
        return _make_pipeline(
            self.db_path, storage=self.storage, rpc=self.rpc, signer=self.signer, clock=self.clock, **kwargs
        )


def _make_pipeline(
    db_path: str,
    *,
    storage: FakeStorageNetwork | None = None,
    rpc: FakeChainRpc | None = None,
    signer: TestSigner | None = None,
    clock: FakeClock | None = None,
    poll_interval_ms: int = 1_000,
    poll_timeout_ms: int = 10_000,
    commitment: str = "finalized",
    upload_attempts: int = 5,
    signer_timeout_s: float = 5.0,
    lease_ttl_ms: int = 300_000,
) -> Pipeline:
    storage = storage or FakeStorageNetwork()
    rpc = rpc or FakeChainRpc()
    signer = signer or TestSigner()
    clock = clock or FakeClock()
    store = SqliteDeploymentStore(db=SqliteDB(path=db_path))
    orch = DeploymentOrchestrator(
        store=store,
        uploader=StorageUploader(
            storage,
            policy=RetryPolicy(max_attempts=upload_attempts, backoff_base_ms=10, backoff_cap_ms=100),
            sleep=clock.sleep,
        ),
        builder=TransactionBuilder(rpc, chain_id="mintflow-test"),
        signing=SigningGateway(signer, timeout_s=signer_timeout_s),
        tracker=SubmissionTracker(
            rpc,
            poll_interval_ms=poll_interval_ms,
            poll_timeout_ms=poll_timeout_ms,
            commitment=commitment,
            sleep=clock.sleep,
            clock=clock.monotonic,
        ),
        payer_public_key=signer.public_key,
        lease_ttl_ms=lease_ttl_ms,
    )
    return Pipeline(orch, store, storage, rpc, signer, clock, db_path)


@pytest.fixture
def make_pipeline(tmp_path: Path) -> Callable[..., Pipeline]:
    made = []

    def _factory(**kwargs: Any) -> Pipeline:
        p = _make_pipeline(str(tmp_path / "mintflow.db"), **kwargs)
        made.append(p)
        return p

    yield _factory
    for p in made:
        p.signer.release()
        p.orchestrator.close()
