# src/mintflow/runtime/boot.py

from __future__ import annotations

from typing import Optional

from mintflow.chain.rpc import JsonRpcChainClient
from mintflow.chain.signing import Signer, SigningGateway
from mintflow.chain.submission import SubmissionTracker
from mintflow.chain.tx_builder import TransactionBuilder
from mintflow.crypto.sig import Ed25519SeedSigner
from mintflow.pipeline.orchestrator import DeploymentOrchestrator
from mintflow.runtime.config import MintflowConfig, load_config
from mintflow.runtime.deployment_store import SqliteDeploymentStore
from mintflow.runtime.sqlite_db import SqliteDB
from mintflow.storage.ipfs import IpfsConfig, KuboStorageNetwork
from mintflow.storage.uploader import RetryPolicy, StorageUploader


def build_signer(cfg: MintflowConfig) -> Signer:
    """Backend signer for service deployments. The service signs as the configured payer."""
    if not cfg.signer_seed:
        raise RuntimeError("MINTFLOW_SIGNER_SEED is not set; the service cannot sign mint transactions")
    signer = Ed25519SeedSigner(cfg.signer_seed)
    if cfg.payer_public_key and cfg.payer_public_key.lower() != signer.public_key:
        raise RuntimeError(
            f"MINTFLOW_PAYER_PUBLIC_KEY ({cfg.payer_public_key}) does not match the signer key ({signer.public_key})"
        )
    return signer


def build_orchestrator(cfg: Optional[MintflowConfig] = None, *, signer: Optional[Signer] = None) -> DeploymentOrchestrator:
    """
    Build a DeploymentOrchestrator from an explicit config or, if omitted,
    from MINTFLOW_CONFIG_PATH / MINTFLOW_* environment variables.

    `mintflow.api.app` and the CLI call this with no args in production.
    """
    c = cfg or load_config()

    if signer is None:
        seed_signer = build_signer(c)
        signer = seed_signer
        payer = c.payer_public_key or seed_signer.public_key
    else:
        payer = c.payer_public_key
    if not payer:
        raise RuntimeError("MINTFLOW_PAYER_PUBLIC_KEY is not set")

    store = SqliteDeploymentStore(db=SqliteDB(path=c.db_path))
    network = KuboStorageNetwork(
        IpfsConfig(api_base=c.ipfs_api_base, pin=c.ipfs_pin, timeout_s=c.http_timeout_s)
    )
    uploader = StorageUploader(
        network,
        policy=RetryPolicy(
            max_attempts=c.upload_max_attempts,
            backoff_base_ms=c.upload_backoff_base_ms,
            backoff_cap_ms=c.upload_backoff_cap_ms,
        ),
    )
    rpc = JsonRpcChainClient(c.rpc_url, timeout_s=c.http_timeout_s, commitment=c.commitment)

    return DeploymentOrchestrator(
        store=store,
        uploader=uploader,
        builder=TransactionBuilder(rpc, chain_id=c.chain_id),
        signing=SigningGateway(signer, timeout_s=c.signer_timeout_s),
        tracker=SubmissionTracker(
            rpc,
            poll_interval_ms=c.poll_interval_ms,
            poll_timeout_ms=c.poll_timeout_ms,
            commitment=c.commitment,
        ),
        payer_public_key=payer,
        max_asset_bytes=c.max_asset_bytes,
        allowed_mime_types=c.allowed_mime_types,
        lease_ttl_ms=c.lease_ttl_ms,
        retention_ms=c.retention_ms,
    )
