from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from conftest import PNG_1X1
from mintflow.runtime.config import default_config

FIELDS = {
    "name": "Harbor Lights #1",
    "symbol": "HARB",
    "description": "Night view of the harbor",
    "seller_fee_basis_points": 500,
    "creators": [{"address": "creator-a", "share": 60}, {"address": "creator-b", "share": 40}],
    "attributes": [{"trait_type": "palette", "value": "blue"}],
}


@pytest.fixture
def client(tmp_path: Path, make_pipeline, monkeypatch: pytest.MonkeyPatch):
    from mintflow.api import app as api_app

    pipeline = make_pipeline()
    monkeypatch.setattr(api_app, "build_orchestrator", lambda cfg: pipeline.orchestrator)
    cfg = replace(default_config(), mode="dev", db_path=str(tmp_path / "mintflow.db"), chain_id="mintflow-test")

    with TestClient(api_app.create_app(cfg=cfg)) as c:
        c.pipeline = pipeline
        yield c


def _deploy(client: TestClient, did: str, fields: dict = FIELDS, data: bytes = PNG_1X1):
    return client.post(
        f"/v1/deployments/{did}",
        files={"file": ("harbor.png", data, "image/png")},
        data={"fields": json.dumps(fields)},
    )


def _lines(resp) -> list:
    return [json.loads(line) for line in resp.text.splitlines() if line.strip()]


def test_create_app_without_runtime() -> None:
    from mintflow.api.app import create_app

    app = create_app(boot_runtime=False, cfg=replace(default_config(), mode="dev"))
    assert app.state.orchestrator is None
    with TestClient(app) as c:
        body = c.get("/v1/health").json()
        assert body["ok"] is True
        assert body["runtime_booted"] is False
        r = c.get("/v1/deployments/x")
        assert r.status_code == 500
        assert r.json()["error"]["code"] == "runtime_not_booted"


def test_health(client: TestClient) -> None:
    body = client.get("/v1/health").json()
    assert body["chain_id"] == "mintflow-test"
    assert body["runtime_booted"] is True
    assert client.get("/v1/health").headers.get("x-request-id")


def test_deploy_streams_snapshots_until_confirmed(client: TestClient) -> None:
    resp = _deploy(client, "dep-1")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/x-ndjson")

    lines = _lines(resp)
    states = [x["deployment"]["state"] for x in lines]
    assert states[0] == "created"
    assert states[-1] == "confirmed"
    assert "unsigned_tx" not in lines[-1]["deployment"]
    assert lines[-1]["deployment"]["terminal"] is True
    image_ref = lines[-1]["deployment"]["image_ref"]
    assert image_ref["gateway_url"] == f"http://127.0.0.1:8080/ipfs/{image_ref['content_id']}"
    assert lines[-1]["deployment"]["metadata_ref"]["gateway_url"].startswith("http://127.0.0.1:8080/ipfs/b")

    got = client.get("/v1/deployments/dep-1").json()
    assert got["deployment"]["state"] == "confirmed"
    assert got["deployment"]["version"] == lines[-1]["deployment"]["version"]
    assert got["deployment"]["image_ref"] == image_ref

    # Resume of a finished deployment: one snapshot, no new network work.
    again = _lines(_deploy(client, "dep-1"))
    assert [x["deployment"]["state"] for x in again] == ["confirmed"]
    assert client.pipeline.rpc.send_count == 1


def test_validation_failure_is_a_failed_snapshot(client: TestClient) -> None:
    bad = dict(FIELDS, creators=[{"address": "creator-a", "share": 60}, {"address": "creator-b", "share": 30}])
    lines = _lines(_deploy(client, "dep-bad", fields=bad))
    last = lines[-1]["deployment"]
    assert last["state"] == "failed"
    assert last["failed_stage"] == "validated"
    assert last["last_error"]["details"] == {"field": "creators"}


def test_conflicting_inputs_return_409(client: TestClient) -> None:
    _deploy(client, "dep-1")
    r = _deploy(client, "dep-1", fields=dict(FIELDS, name="Other"))
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "idempotency_conflict"


def test_bad_fields_return_400(client: TestClient) -> None:
    r = client.post("/v1/deployments/d", files={"file": ("a.png", PNG_1X1, "image/png")}, data={"fields": "{nope"})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "invalid_fields"

    r = _deploy(client, "d", fields={"symbol": "X"})
    assert r.status_code == 400


def test_oversize_upload_is_rejected_before_the_pipeline(client: TestClient) -> None:
    r = _deploy(client, "big", data=b"x" * (1024 * 1024 + 1))
    assert r.status_code == 400
    assert r.json()["error"]["details"] == {"field": "asset"}
    assert client.get("/v1/deployments/big").status_code == 404


def test_cancel_and_clear(client: TestClient) -> None:
    assert client.post("/v1/deployments/missing/cancel").status_code == 404

    _deploy(client, "dep-1")
    r = client.post("/v1/deployments/dep-1/cancel")
    assert r.status_code == 200
    assert client.get("/v1/deployments/dep-1").json()["deployment"]["cancel_requested"] is True

    assert client.delete("/v1/deployments/dep-1").status_code == 200
    assert client.get("/v1/deployments/dep-1").status_code == 404
    assert client.delete("/v1/deployments/dep-1").status_code == 404
