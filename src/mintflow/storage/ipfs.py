# src/mintflow/storage/ipfs.py
from __future__ import annotations

import http.client
import json
import socket
import urllib.parse
import uuid
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

# Single raw leaf: the returned CID equals util.content_id.compute_content_id().
CHUNK_SIZE_BYTES = 1024 * 1024


class StorageNetwork(Protocol):
    def put(self, data: bytes, *, name: str) -> str:
        """Store `data` and return its content identifier."""
        ...


class StorageTransportError(Exception):
    """Timeout, connection failure or 5xx: safe to retry the same bytes."""


class StorageRejectedError(Exception):
    """4xx or malformed response: retrying the same bytes will not help."""

    def __init__(self, message: str, *, status: int = 0) -> None:
        super().__init__(message)
        self.status = int(status)


@dataclass(frozen=True)
class IpfsConfig:
    api_base: str
    pin: bool = True
    timeout_s: float = 30.0


def parse_add_response(raw: bytes) -> Tuple[str, int]:
    """
    /api/v0/add returns NDJSON (one JSON per line).
    We take the last valid JSON object and extract Hash + Size.
    """
    txt = raw.decode("utf-8", errors="replace").strip()
    if not txt:
        raise StorageRejectedError("ipfs_add_failed:empty_response")

    last_obj: Optional[dict] = None
    for line in txt.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            last_obj = obj

    if last_obj is None:
        raise StorageRejectedError(f"ipfs_add_failed:bad_response:{txt[:200]}")

    cid = str(last_obj.get("Hash") or "").strip()
    try:
        size = int(str(last_obj.get("Size") or "0").strip())
    except ValueError:
        size = 0

    if not cid:
        raise StorageRejectedError(f"ipfs_add_failed:missing_hash:{last_obj!r}")

    return cid, size


class KuboStorageNetwork:
    """StorageNetwork over the Kubo HTTP API (/api/v0/add)."""

    def __init__(self, cfg: IpfsConfig) -> None:
        if not cfg.api_base:
            raise ValueError("ipfs api_base is empty")
        self.cfg = cfg
        u = urllib.parse.urlparse(cfg.api_base)
        self._scheme = (u.scheme or "http").lower()
        self._host = u.hostname or "127.0.0.1"
        self._port = int(u.port or (443 if self._scheme == "https" else 80))

    def _connection(self) -> http.client.HTTPConnection:
        if self._scheme == "https":
            return http.client.HTTPSConnection(self._host, self._port, timeout=self.cfg.timeout_s)
        return http.client.HTTPConnection(self._host, self._port, timeout=self.cfg.timeout_s)

    def put(self, data: bytes, *, name: str) -> str:
        qs = urllib.parse.urlencode(
            {
                "pin": "true" if self.cfg.pin else "false",
                "cid-version": "1",
                "raw-leaves": "true",
                "hash": "sha2-256",
                "chunker": f"size-{CHUNK_SIZE_BYTES}",
                "wrap-with-directory": "false",
                "progress": "false",
            }
        )
        boundary = f"----mintflow-{uuid.uuid4().hex}"
        filename = (name or "upload").strip() or "upload"
        body = (
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="file"; filename="{filename}"\r\n'
                f"Content-Type: application/octet-stream\r\n"
                f"\r\n"
            ).encode("utf-8")
            + bytes(data)
            + f"\r\n--{boundary}--\r\n".encode("utf-8")
        )

        conn = self._connection()
        try:
            conn.request(
                "POST",
                f"/api/v0/add?{qs}",
                body=body,
                headers={"Content-Type": f"multipart/form-data; boundary={boundary}"},
            )
            resp = conn.getresponse()
            payload = resp.read()
        except (socket.timeout, TimeoutError, ConnectionError, http.client.HTTPException, OSError) as e:
            raise StorageTransportError(f"ipfs_add_transport:{type(e).__name__}:{e}") from e
        finally:
            conn.close()

        if resp.status >= 500:
            msg = payload.decode("utf-8", errors="replace").strip()
            raise StorageTransportError(f"ipfs_add_failed:http_{resp.status}:{msg[:300]}")
        if resp.status < 200 or resp.status >= 300:
            msg = payload.decode("utf-8", errors="replace").strip()
            raise StorageRejectedError(f"ipfs_add_failed:http_{resp.status}:{msg[:300]}", status=resp.status)

        cid, _ = parse_add_response(payload)
        return cid
