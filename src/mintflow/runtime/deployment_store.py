# src/mintflow/runtime/deployment_store.py
from __future__ import annotations

import json
import sqlite3
import time
from typing import Optional

from mintflow.pipeline.models import DeploymentRecord, DeploymentState
from mintflow.runtime.errors import DeploymentBusyError, StaleRecordError, StoreError
from mintflow.runtime.sqlite_db import SqliteDB
from mintflow.util.canon import canon_json


def _now_ms() -> int:
    return int(time.time() * 1000)


_TERMINAL_STATES = (
    DeploymentState.CONFIRMED.value,
    DeploymentState.CANCELLED.value,
    DeploymentState.FAILED.value,
)


class SqliteDeploymentStore:
    """Keyed, versioned deployment records persisted in SQLite.

    Table: deployments(deployment_id PK, version, state, record_json,
    lease_owner, lease_expires_ms, cancel_requested, created_ms, updated_ms)

    Guarantees:
      - one row per deployment_id; version increases by exactly one per write
      - compare_and_swap() fails with StaleRecordError on a lost update
      - at most one live lease per deployment_id (mutual exclusion per id);
        an expired lease can be taken over so a crashed driver never blocks
        a resume forever
      - the cancel flag is written without bumping the version, so a live
        driver's next CAS is not invalidated by a cancel request
    """

    def __init__(self, *, db: SqliteDB) -> None:
        self._db = db
        self._db.init_schema()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> DeploymentRecord:
        raw = json.loads(str(row["record_json"]))
        if not isinstance(raw, dict):
            raise StoreError(f"record_json is not a JSON object: {row['deployment_id']}")
        return DeploymentRecord.from_json(
            raw,
            version=int(row["version"]),
            cancel_requested=bool(int(row["cancel_requested"])),
        )

    def load(self, deployment_id: str) -> Optional[DeploymentRecord]:
        with self._db.connection() as con:
            row = con.execute(
                "SELECT * FROM deployments WHERE deployment_id=? LIMIT 1;",
                (deployment_id,),
            ).fetchone()
        return None if row is None else self._row_to_record(row)

    def create(self, record: DeploymentRecord, *, now_ms: Optional[int] = None) -> DeploymentRecord:
        """Insert a new record at version 1. Raises StoreError if the id exists."""
        now = _now_ms() if now_ms is None else int(now_ms)
        did = record.deployment_id
        with self._db.write_tx() as con:
            try:
                con.execute(
                    """
                    INSERT INTO deployments(
                      deployment_id, version, state, record_json,
                      lease_owner, lease_expires_ms, cancel_requested, created_ms, updated_ms
                    ) VALUES(?, 1, ?, ?, NULL, 0, 0, ?, ?);
                    """,
                    (did, record.state.value, canon_json(record.to_json()), now, now),
                )
            except sqlite3.IntegrityError as e:
                raise StoreError(f"deployment {did!r} already exists") from e
            row = con.execute("SELECT * FROM deployments WHERE deployment_id=? LIMIT 1;", (did,)).fetchone()
            return self._row_to_record(row)

    def acquire_lease(
        self,
        deployment_id: str,
        owner: str,
        ttl_ms: int,
        *,
        now_ms: Optional[int] = None,
    ) -> DeploymentRecord:
        """Take (or renew) the lease on an existing record.

        Raises StoreError if the record is missing and DeploymentBusyError if
        another owner holds a live lease.
        """
        now = _now_ms() if now_ms is None else int(now_ms)
        with self._db.write_tx() as con:
            row = con.execute(
                "SELECT * FROM deployments WHERE deployment_id=? LIMIT 1;", (deployment_id,)
            ).fetchone()
            if row is None:
                raise StoreError(f"deployment {deployment_id!r} not found")
            holder = row["lease_owner"]
            if holder and holder != owner and int(row["lease_expires_ms"]) > now:
                raise DeploymentBusyError(f"deployment {deployment_id!r} is being driven by {holder}")
            con.execute(
                "UPDATE deployments SET lease_owner=?, lease_expires_ms=? WHERE deployment_id=?;",
                (owner, now + int(ttl_ms), deployment_id),
            )
            return self._row_to_record(row)

    def claim(
        self,
        initial: DeploymentRecord,
        *,
        owner: str,
        ttl_ms: int,
        now_ms: Optional[int] = None,
    ) -> DeploymentRecord:
        """Take the lease for initial.deployment_id, creating the record if absent.

        Returns the stored record (which may be an older one than `initial`).
        Raises DeploymentBusyError if another owner holds a live lease.
        """
        now = _now_ms() if now_ms is None else int(now_ms)
        expires = now + int(ttl_ms)
        did = initial.deployment_id

        with self._db.write_tx() as con:
            row = con.execute("SELECT * FROM deployments WHERE deployment_id=? LIMIT 1;", (did,)).fetchone()
            if row is None:
                con.execute(
                    """
                    INSERT INTO deployments(
                      deployment_id, version, state, record_json,
                      lease_owner, lease_expires_ms, cancel_requested, created_ms, updated_ms
                    ) VALUES(?, 1, ?, ?, ?, ?, 0, ?, ?);
                    """,
                    (did, initial.state.value, canon_json(initial.to_json()), owner, expires, now, now),
                )
                row = con.execute("SELECT * FROM deployments WHERE deployment_id=? LIMIT 1;", (did,)).fetchone()
                return self._row_to_record(row)

            holder = row["lease_owner"]
            if holder and holder != owner and int(row["lease_expires_ms"]) > now:
                raise DeploymentBusyError(f"deployment {did!r} is being driven by {holder}")

            con.execute(
                "UPDATE deployments SET lease_owner=?, lease_expires_ms=? WHERE deployment_id=?;",
                (owner, expires, did),
            )
            return self._row_to_record(row)

    def compare_and_swap(
        self,
        record: DeploymentRecord,
        *,
        expected_version: int,
        lease_owner: Optional[str] = None,
        lease_ttl_ms: int = 0,
        now_ms: Optional[int] = None,
    ) -> DeploymentRecord:
        """Write `record` if the stored version is still `expected_version`.

        With lease_owner set the write is also fenced on the lease (a driver
        whose lease was taken over cannot write) and the lease is extended.
        Returns the stored record at its new version.
        """
        now = _now_ms() if now_ms is None else int(now_ms)
        did = record.deployment_id
        payload = canon_json(record.to_json())

        with self._db.write_tx() as con:
            if lease_owner is None:
                cur = con.execute(
                    """
                    UPDATE deployments
                    SET version=version+1, state=?, record_json=?, updated_ms=?
                    WHERE deployment_id=? AND version=?;
                    """,
                    (record.state.value, payload, now, did, int(expected_version)),
                )
            else:
                cur = con.execute(
                    """
                    UPDATE deployments
                    SET version=version+1, state=?, record_json=?, updated_ms=?, lease_expires_ms=?
                    WHERE deployment_id=? AND version=? AND lease_owner=?;
                    """,
                    (record.state.value, payload, now, now + int(lease_ttl_ms), did, int(expected_version), lease_owner),
                )
            if cur.rowcount != 1:
                row = con.execute(
                    "SELECT version, lease_owner FROM deployments WHERE deployment_id=? LIMIT 1;", (did,)
                ).fetchone()
                if row is None:
                    raise StaleRecordError(f"deployment {did!r} no longer exists")
                raise StaleRecordError(
                    f"deployment {did!r}: expected version {expected_version}, "
                    f"have {row['version']} (lease owner {row['lease_owner']!r})"
                )
            row = con.execute("SELECT * FROM deployments WHERE deployment_id=? LIMIT 1;", (did,)).fetchone()
            return self._row_to_record(row)

    def release_lease(self, deployment_id: str, owner: str) -> None:
        with self._db.write_tx() as con:
            con.execute(
                "UPDATE deployments SET lease_owner=NULL, lease_expires_ms=0 WHERE deployment_id=? AND lease_owner=?;",
                (deployment_id, owner),
            )

    def request_cancel(self, deployment_id: str) -> bool:
        with self._db.write_tx() as con:
            cur = con.execute(
                "UPDATE deployments SET cancel_requested=1 WHERE deployment_id=?;",
                (deployment_id,),
            )
            return cur.rowcount == 1

    def is_cancel_requested(self, deployment_id: str) -> bool:
        with self._db.connection() as con:
            row = con.execute(
                "SELECT cancel_requested FROM deployments WHERE deployment_id=? LIMIT 1;",
                (deployment_id,),
            ).fetchone()
        return bool(row is not None and int(row["cancel_requested"]))

    def delete(self, deployment_id: str, *, now_ms: Optional[int] = None) -> bool:
        """Remove a record. Refuses while a live lease is held."""
        now = _now_ms() if now_ms is None else int(now_ms)
        with self._db.write_tx() as con:
            row = con.execute(
                "SELECT lease_owner, lease_expires_ms FROM deployments WHERE deployment_id=? LIMIT 1;",
                (deployment_id,),
            ).fetchone()
            if row is None:
                return False
            if row["lease_owner"] and int(row["lease_expires_ms"]) > now:
                raise DeploymentBusyError(f"deployment {deployment_id!r} is being driven by {row['lease_owner']}")
            con.execute("DELETE FROM deployments WHERE deployment_id=?;", (deployment_id,))
            return True

    def purge_expired(self, *, retention_ms: int, now_ms: Optional[int] = None) -> int:
        """Delete unleased terminal-state records older than the retention window.

        Retryable failures are kept: the failure row is still the resume point.
        """
        now = _now_ms() if now_ms is None else int(now_ms)
        cutoff = now - int(retention_ms)
        with self._db.write_tx() as con:
            rows = con.execute(
                f"""
                SELECT deployment_id, record_json FROM deployments
                WHERE state IN ({",".join("?" for _ in _TERMINAL_STATES)})
                  AND updated_ms < ?
                  AND (lease_owner IS NULL OR lease_expires_ms <= ?);
                """,
                (*_TERMINAL_STATES, cutoff, now),
            ).fetchall()
            doomed = []
            for r in rows:
                raw = json.loads(str(r["record_json"]))
                if raw.get("state") == DeploymentState.FAILED.value and bool(raw.get("retryable")):
                    continue
                doomed.append(r["deployment_id"])
            for did in doomed:
                con.execute("DELETE FROM deployments WHERE deployment_id=?;", (did,))
            return len(doomed)
