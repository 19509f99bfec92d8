"""
Bill Pay Database

Single source of truth for vendors, bills, source documents, approval
workflows, bill approvals (with their append-only decision log), payment
attempts and audit events.

Concurrent writers coordinate through ``version`` columns: every guarded
write is ``UPDATE ... WHERE id = ? AND version = ?`` and a miss raises
``StaleRowError``. Multi-row changes go through ``commit_changes`` so they
land in one transaction.
"""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

try:
    import psycopg
    from psycopg.rows import dict_row
    HAS_POSTGRES = True
except ImportError:  # pragma: no cover
    psycopg = None
    dict_row = None
    HAS_POSTGRES = False

logger = logging.getLogger(__name__)

IN_FLIGHT_STATUSES = ("pending", "processing")


class StaleRowError(Exception):
    """A version-guarded update matched no row."""

    def __init__(self, table: str, row_id: str, expected_version: Optional[int]):
        self.table = table
        self.row_id = row_id
        self.expected_version = expected_version
        super().__init__(f"{table} {row_id} changed (expected version {expected_version})")


class UniqueConflict(Exception):
    """An insert or update violated a unique constraint."""

    def __init__(self, table: str, detail: str):
        self.table = table
        self.detail = detail
        super().__init__(f"{table}: {detail}")


@dataclass
class RowUpdate:
    table: str
    row_id: str
    fields: Dict[str, Any]
    expected_version: Optional[int] = None  # None = unguarded


@dataclass
class RowInsert:
    table: str
    values: Dict[str, Any] = field(default_factory=dict)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _serialize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, dict)):
        return json.dumps(value, default=str)
    return value


class BillPayDB:
    VERSIONED_TABLES = {"vendors", "bills", "bill_approvals", "payments"}

    def __init__(self, db_path: str = "billpay.db"):
        self.dsn = os.getenv("DATABASE_URL")
        self.db_path = db_path
        dsn = (self.dsn or "").strip().lower()
        self.allow_sqlite_fallback = str(
            os.getenv("BILLPAY_DB_FALLBACK_SQLITE", "true")
        ).strip().lower() not in {"0", "false", "no", "off"}
        self.use_postgres = bool(
            HAS_POSTGRES
            and dsn
            and (dsn.startswith("postgres://") or dsn.startswith("postgresql://"))
        )
        self._initialized = False
        self._fallback_warned = False

    def _sqlite_connection(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connect(self):
        if self.use_postgres:
            try:
                conn = psycopg.connect(self.dsn, row_factory=dict_row)
            except Exception as exc:
                if not self.allow_sqlite_fallback:
                    raise
                if not self._fallback_warned:
                    logger.warning(
                        "Postgres unavailable (%s). Falling back to SQLite at %s. "
                        "Set BILLPAY_DB_FALLBACK_SQLITE=false to disable fallback.",
                        exc,
                        self.db_path,
                    )
                    self._fallback_warned = True
                self.use_postgres = False
                conn = self._sqlite_connection()
        else:
            conn = self._sqlite_connection()
        try:
            yield conn
        finally:
            conn.close()

    def _prepare_sql(self, sql: str) -> str:
        if self.use_postgres:
            return sql.replace("?", "%s")
        return sql

    def _integrity_errors(self) -> tuple:
        if HAS_POSTGRES:
            return (sqlite3.IntegrityError, psycopg.IntegrityError)
        return (sqlite3.IntegrityError,)

    def initialize(self) -> None:
        if self._initialized:
            return
        with self.connect() as conn:
            cur = conn.cursor()

            cur.execute("""
                CREATE TABLE IF NOT EXISTS vendors (
                    id TEXT PRIMARY KEY,
                    organization_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    email TEXT,
                    phone TEXT,
                    category TEXT DEFAULT 'other',
                    payment_terms INTEGER DEFAULT 30,
                    auto_pay INTEGER DEFAULT 0,
                    approval_required INTEGER DEFAULT 1,
                    approval_threshold TEXT DEFAULT '0.00',
                    payment_methods TEXT,
                    preferred_payment_method TEXT DEFAULT 'ach',
                    currency TEXT DEFAULT 'USD',
                    status TEXT NOT NULL DEFAULT 'active',
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS bills (
                    id TEXT PRIMARY KEY,
                    organization_id TEXT NOT NULL,
                    vendor_id TEXT,
                    amount TEXT NOT NULL,
                    currency TEXT DEFAULT 'USD',
                    issue_date TEXT,
                    due_date TEXT NOT NULL,
                    category TEXT,
                    description TEXT,
                    invoice_number TEXT,
                    status TEXT NOT NULL,
                    priority TEXT DEFAULT 'medium',
                    scheduled_date TEXT,
                    paid_date TEXT,
                    document_id TEXT UNIQUE,
                    approved_amount TEXT,
                    requires_review INTEGER DEFAULT 0,
                    needs_intervention INTEGER DEFAULT 0,
                    intervention_reason TEXT,
                    last_error TEXT,
                    created_by TEXT,
                    metadata TEXT,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    id TEXT PRIMARY KEY,
                    organization_id TEXT NOT NULL,
                    extracted_data TEXT NOT NULL,
                    confidence REAL DEFAULT 0,
                    bill_id TEXT,
                    status TEXT DEFAULT 'processed',
                    created_by TEXT,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS approval_workflows (
                    id TEXT PRIMARY KEY,
                    organization_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    amount_threshold TEXT NOT NULL DEFAULT '0.00',
                    vendor_categories TEXT,
                    required_approvers TEXT NOT NULL,
                    is_active INTEGER DEFAULT 1,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS bill_approvals (
                    id TEXT PRIMARY KEY,
                    bill_id TEXT NOT NULL,
                    workflow_id TEXT NOT NULL,
                    organization_id TEXT NOT NULL,
                    required_approvers TEXT NOT NULL,
                    current_step INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'pending',
                    approved_amount TEXT,
                    requested_by TEXT,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT,
                    completed_at TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS approval_steps (
                    id TEXT PRIMARY KEY,
                    approval_id TEXT NOT NULL,
                    step_index INTEGER NOT NULL,
                    approver_id TEXT NOT NULL,
                    decision TEXT NOT NULL,
                    comment TEXT,
                    satisfies TEXT,
                    decided_at TEXT,
                    UNIQUE(approval_id, step_index, approver_id)
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS payments (
                    id TEXT PRIMARY KEY,
                    bill_id TEXT NOT NULL,
                    organization_id TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    currency TEXT DEFAULT 'USD',
                    payment_method TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    scheduled_date TEXT,
                    processor_reference TEXT UNIQUE,
                    processed_date TEXT,
                    fees TEXT DEFAULT '0.00',
                    exchange_rate TEXT,
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    next_attempt_at TEXT,
                    claimed_at TEXT,
                    failure_reason TEXT,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            # At most one pending/processing payment per bill.
            cur.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_payments_one_in_flight
                ON payments(bill_id) WHERE status IN ('pending', 'processing')
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS audit_events (
                    id TEXT PRIMARY KEY,
                    organization_id TEXT,
                    bill_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    prev_state TEXT,
                    new_state TEXT,
                    actor_type TEXT,
                    actor_id TEXT,
                    payload_json TEXT,
                    idempotency_key TEXT UNIQUE,
                    ts TEXT
                )
            """)

            cur.execute("CREATE INDEX IF NOT EXISTS idx_bills_org_status ON bills(organization_id, status)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_payments_status ON payments(status, scheduled_date)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_approvals_bill ON bill_approvals(bill_id, created_at)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_audit_bill ON audit_events(bill_id, ts)")
            conn.commit()
        self._initialized = True

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def _apply_insert(self, cur, change: RowInsert) -> None:
        values = {k: _serialize(v) for k, v in change.values.items()}
        columns = ", ".join(values.keys())
        placeholders = ", ".join("?" for _ in values)
        sql = self._prepare_sql(f"INSERT INTO {change.table} ({columns}) VALUES ({placeholders})")
        try:
            cur.execute(sql, tuple(values.values()))
        except self._integrity_errors() as exc:
            raise UniqueConflict(change.table, str(exc)) from exc

    def _apply_update(self, cur, change: RowUpdate, now: str) -> None:
        values = {k: _serialize(v) for k, v in change.fields.items()}
        values["updated_at"] = now
        set_clause = ", ".join(f"{k} = ?" for k in values.keys())
        params: List[Any] = list(values.values())
        if change.table in self.VERSIONED_TABLES:
            set_clause += ", version = version + 1"
        sql = f"UPDATE {change.table} SET {set_clause} WHERE id = ?"
        params.append(change.row_id)
        if change.expected_version is not None:
            sql += " AND version = ?"
            params.append(change.expected_version)
        try:
            cur.execute(self._prepare_sql(sql), tuple(params))
        except self._integrity_errors() as exc:
            raise UniqueConflict(change.table, str(exc)) from exc
        if cur.rowcount != 1:
            raise StaleRowError(change.table, change.row_id, change.expected_version)

    def commit_changes(
        self,
        updates: Sequence[RowUpdate] = (),
        inserts: Sequence[RowInsert] = (),
    ) -> None:
        """Apply guarded updates, then inserts, atomically.

        Raises ``StaleRowError`` or ``UniqueConflict`` after rolling back.
        """
        self.initialize()
        now = utcnow()
        with self.connect() as conn:
            cur = conn.cursor()
            try:
                for change in updates:
                    self._apply_update(cur, change, now)
                for change in inserts:
                    self._apply_insert(cur, change)
            except Exception:
                conn.rollback()
                raise
            conn.commit()

    def _fetchone(self, sql: str, params: Iterable[Any]) -> Optional[Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(self._prepare_sql(sql), tuple(params))
            row = cur.fetchone()
        return dict(row) if row else None

    def _fetchall(self, sql: str, params: Iterable[Any]) -> List[Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(self._prepare_sql(sql), tuple(params))
            rows = cur.fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Vendors
    # ------------------------------------------------------------------

    def create_vendor(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        now = utcnow()
        vendor_id = payload.get("id") or new_id("VEN")
        values = {
            "id": vendor_id,
            "organization_id": payload["organization_id"],
            "name": payload["name"],
            "email": payload.get("email"),
            "phone": payload.get("phone"),
            "category": payload.get("category") or "other",
            "payment_terms": payload.get("payment_terms", 30),
            "auto_pay": bool(payload.get("auto_pay", False)),
            "approval_required": bool(payload.get("approval_required", True)),
            "approval_threshold": payload.get("approval_threshold") or Decimal("0.00"),
            "payment_methods": list(payload.get("payment_methods") or []),
            "preferred_payment_method": payload.get("preferred_payment_method") or "ach",
            "currency": payload.get("currency") or "USD",
            "status": payload.get("status") or "active",
            "version": 0,
            "created_at": now,
            "updated_at": now,
        }
        self.commit_changes(inserts=[RowInsert("vendors", values)])
        return self.get_vendor(payload["organization_id"], vendor_id)

    def update_vendor(self, vendor_id: str, expected_version: Optional[int] = None, **fields) -> None:
        self.commit_changes(updates=[RowUpdate("vendors", vendor_id, fields, expected_version)])

    def get_vendor(self, organization_id: str, vendor_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone(
            "SELECT * FROM vendors WHERE organization_id = ? AND id = ?",
            (organization_id, vendor_id),
        )

    def find_vendor_by_name(
        self, organization_id: str, name: str, email: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        if email is not None:
            return self._fetchone(
                "SELECT * FROM vendors WHERE organization_id = ? AND LOWER(name) = LOWER(?) "
                "AND LOWER(email) = LOWER(?) ORDER BY created_at ASC LIMIT 1",
                (organization_id, name, email),
            )
        return self._fetchone(
            "SELECT * FROM vendors WHERE organization_id = ? AND LOWER(name) = LOWER(?) "
            "ORDER BY created_at ASC LIMIT 1",
            (organization_id, name),
        )

    def list_vendors(self, organization_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        if status:
            return self._fetchall(
                "SELECT * FROM vendors WHERE organization_id = ? AND status = ? ORDER BY name ASC",
                (organization_id, status),
            )
        return self._fetchall(
            "SELECT * FROM vendors WHERE organization_id = ? ORDER BY name ASC",
            (organization_id,),
        )

    # ------------------------------------------------------------------
    # Bills
    # ------------------------------------------------------------------

    def bill_insert(self, payload: Dict[str, Any]) -> RowInsert:
        now = utcnow()
        return RowInsert("bills", {
            "id": payload.get("id") or new_id("BILL"),
            "organization_id": payload["organization_id"],
            "vendor_id": payload.get("vendor_id"),
            "amount": payload["amount"],
            "currency": payload.get("currency") or "USD",
            "issue_date": payload.get("issue_date"),
            "due_date": payload["due_date"],
            "category": payload.get("category") or "other",
            "description": payload.get("description") or "",
            "invoice_number": payload.get("invoice_number"),
            "status": payload.get("status") or "draft",
            "priority": payload.get("priority") or "medium",
            "scheduled_date": payload.get("scheduled_date"),
            "document_id": payload.get("document_id"),
            "requires_review": bool(payload.get("requires_review", False)),
            "needs_intervention": False,
            "created_by": payload.get("created_by"),
            "metadata": payload.get("metadata") or {},
            "version": 0,
            "created_at": now,
            "updated_at": now,
        })

    def create_bill(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        insert = self.bill_insert(payload)
        self.commit_changes(inserts=[insert])
        return self.get_bill(payload["organization_id"], insert.values["id"])

    def update_bill(self, bill_id: str, expected_version: Optional[int] = None, **fields) -> None:
        self.commit_changes(updates=[RowUpdate("bills", bill_id, fields, expected_version)])

    def delete_draft_bill(self, organization_id: str, bill_id: str) -> bool:
        self.initialize()
        sql = self._prepare_sql(
            "DELETE FROM bills WHERE organization_id = ? AND id = ? AND status = 'draft'"
        )
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (organization_id, bill_id))
            conn.commit()
            return cur.rowcount > 0

    def get_bill(self, organization_id: str, bill_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone(
            "SELECT * FROM bills WHERE organization_id = ? AND id = ?",
            (organization_id, bill_id),
        )

    def get_bill_by_document(self, organization_id: str, document_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone(
            "SELECT * FROM bills WHERE organization_id = ? AND document_id = ?",
            (organization_id, document_id),
        )

    def list_bills(
        self,
        organization_id: str,
        status: Optional[str] = None,
        limit: int = 1000,
    ) -> List[Dict[str, Any]]:
        if status:
            return self._fetchall(
                "SELECT * FROM bills WHERE organization_id = ? AND status = ? "
                "ORDER BY due_date ASC, created_at ASC LIMIT ?",
                (organization_id, status, limit),
            )
        return self._fetchall(
            "SELECT * FROM bills WHERE organization_id = ? ORDER BY due_date ASC, created_at ASC LIMIT ?",
            (organization_id, limit),
        )

    def list_schedulable_bills(self, limit: int = 500) -> List[Dict[str, Any]]:
        """Approved bills across tenants with no payment in flight."""
        return self._fetchall(
            """
            SELECT b.* FROM bills b
            WHERE b.status = 'approved' AND b.needs_intervention = 0
              AND NOT EXISTS (
                SELECT 1 FROM payments p
                WHERE p.bill_id = b.id AND p.status IN ('pending', 'processing')
              )
            ORDER BY b.due_date ASC LIMIT ?
            """,
            (limit,),
        )

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def document_insert(self, payload: Dict[str, Any]) -> RowInsert:
        now = utcnow()
        return RowInsert("documents", {
            "id": payload.get("id") or new_id("DOC"),
            "organization_id": payload["organization_id"],
            "extracted_data": payload.get("extracted_data") or {},
            "confidence": float(payload.get("confidence") or 0),
            "bill_id": payload.get("bill_id"),
            "status": payload.get("status") or "processed",
            "created_by": payload.get("created_by"),
            "created_at": now,
            "updated_at": now,
        })

    def get_document(self, organization_id: str, document_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone(
            "SELECT * FROM documents WHERE organization_id = ? AND id = ?",
            (organization_id, document_id),
        )

    # ------------------------------------------------------------------
    # Approval workflows
    # ------------------------------------------------------------------

    def create_workflow(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        now = utcnow()
        workflow_id = payload.get("id") or new_id("WF")
        values = {
            "id": workflow_id,
            "organization_id": payload["organization_id"],
            "name": payload["name"],
            "description": payload.get("description") or "",
            "amount_threshold": payload.get("amount_threshold") or Decimal("0.00"),
            "vendor_categories": list(payload.get("vendor_categories") or []),
            "required_approvers": [list(step) for step in payload["required_approvers"]],
            "is_active": bool(payload.get("is_active", True)),
            "created_at": payload.get("created_at") or now,
            "updated_at": now,
        }
        self.commit_changes(inserts=[RowInsert("approval_workflows", values)])
        return self.get_workflow(payload["organization_id"], workflow_id)

    def update_workflow(self, workflow_id: str, **fields) -> None:
        self.commit_changes(updates=[RowUpdate("approval_workflows", workflow_id, fields)])

    def get_workflow(self, organization_id: str, workflow_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone(
            "SELECT * FROM approval_workflows WHERE organization_id = ? AND id = ?",
            (organization_id, workflow_id),
        )

    def list_workflows(self, organization_id: str, active_only: bool = False) -> List[Dict[str, Any]]:
        if active_only:
            return self._fetchall(
                "SELECT * FROM approval_workflows WHERE organization_id = ? AND is_active = 1 "
                "ORDER BY created_at ASC",
                (organization_id,),
            )
        return self._fetchall(
            "SELECT * FROM approval_workflows WHERE organization_id = ? ORDER BY created_at ASC",
            (organization_id,),
        )

    # ------------------------------------------------------------------
    # Bill approvals
    # ------------------------------------------------------------------

    def bill_approval_insert(self, payload: Dict[str, Any]) -> RowInsert:
        now = utcnow()
        return RowInsert("bill_approvals", {
            "id": payload.get("id") or new_id("APR"),
            "bill_id": payload["bill_id"],
            "workflow_id": payload["workflow_id"],
            "organization_id": payload["organization_id"],
            "required_approvers": payload["required_approvers"],
            "current_step": 0,
            "status": "pending",
            "approved_amount": payload.get("approved_amount"),
            "requested_by": payload.get("requested_by"),
            "version": 0,
            "created_at": now,
            "updated_at": now,
        })

    def approval_step_insert(self, payload: Dict[str, Any]) -> RowInsert:
        return RowInsert("approval_steps", {
            "id": payload.get("id") or new_id("STEP"),
            "approval_id": payload["approval_id"],
            "step_index": payload["step_index"],
            "approver_id": payload["approver_id"],
            "decision": payload["decision"],
            "comment": payload.get("comment"),
            "satisfies": payload.get("satisfies"),
            "decided_at": payload.get("decided_at") or utcnow(),
        })

    def get_bill_approval(self, approval_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM bill_approvals WHERE id = ?", (approval_id,))

    def get_latest_bill_approval(self, bill_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone(
            "SELECT * FROM bill_approvals WHERE bill_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1"
            if not self.use_postgres else
            "SELECT * FROM bill_approvals WHERE bill_id = ? ORDER BY created_at DESC LIMIT 1",
            (bill_id,),
        )

    def list_bill_approvals(self, bill_id: str) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM bill_approvals WHERE bill_id = ? ORDER BY created_at ASC",
            (bill_id,),
        )

    def list_approval_steps(self, approval_id: str) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM approval_steps WHERE approval_id = ? ORDER BY decided_at ASC, step_index ASC",
            (approval_id,),
        )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def payment_insert(self, payload: Dict[str, Any]) -> RowInsert:
        now = utcnow()
        return RowInsert("payments", {
            "id": payload.get("id") or new_id("PAY"),
            "bill_id": payload["bill_id"],
            "organization_id": payload["organization_id"],
            "amount": payload["amount"],
            "currency": payload.get("currency") or "USD",
            "payment_method": payload["payment_method"],
            "status": "pending",
            "scheduled_date": payload.get("scheduled_date"),
            "fees": Decimal("0.00"),
            "attempt_count": 0,
            "next_attempt_at": payload.get("next_attempt_at"),
            "version": 0,
            "created_at": now,
            "updated_at": now,
        })

    def update_payment(self, payment_id: str, expected_version: Optional[int] = None, **fields) -> None:
        self.commit_changes(updates=[RowUpdate("payments", payment_id, fields, expected_version)])

    def get_payment(self, payment_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM payments WHERE id = ?", (payment_id,))

    def get_payment_by_reference(self, processor_reference: str) -> Optional[Dict[str, Any]]:
        return self._fetchone(
            "SELECT * FROM payments WHERE processor_reference = ?",
            (processor_reference,),
        )

    def get_in_flight_payment(self, bill_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone(
            "SELECT * FROM payments WHERE bill_id = ? AND status IN ('pending', 'processing') LIMIT 1",
            (bill_id,),
        )

    def list_payments_for_bill(self, bill_id: str) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM payments WHERE bill_id = ? ORDER BY created_at ASC",
            (bill_id,),
        )

    def list_due_payments(self, today: str, now: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Pending payments whose scheduled date has arrived and backoff has elapsed."""
        return self._fetchall(
            """
            SELECT * FROM payments
            WHERE status = 'pending'
              AND (scheduled_date IS NULL OR scheduled_date <= ?)
              AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
            ORDER BY scheduled_date ASC, created_at ASC
            LIMIT ?
            """,
            (today, now, limit),
        )

    def list_expired_claims(self, cutoff: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Processing payments claimed before ``cutoff`` that never got a processor reference."""
        return self._fetchall(
            """
            SELECT * FROM payments
            WHERE status = 'processing'
              AND processor_reference IS NULL
              AND (claimed_at IS NULL OR claimed_at <= ?)
            ORDER BY claimed_at ASC
            LIMIT ?
            """,
            (cutoff, limit),
        )

    def list_payments_by_status(self, status: str, limit: int = 500) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM payments WHERE status = ? ORDER BY updated_at ASC LIMIT ?",
            (status, limit),
        )

    # ------------------------------------------------------------------
    # Audit events
    # ------------------------------------------------------------------

    def audit_insert(self, payload: Dict[str, Any]) -> RowInsert:
        return RowInsert("audit_events", {
            "id": payload.get("id") or new_id("EVT"),
            "organization_id": payload.get("organization_id"),
            "bill_id": payload["bill_id"],
            "event_type": payload["event_type"],
            "prev_state": payload.get("from_state"),
            "new_state": payload.get("to_state"),
            "actor_type": payload.get("actor_type") or "system",
            "actor_id": payload.get("actor_id"),
            "payload_json": payload.get("payload") or {},
            "idempotency_key": payload.get("idempotency_key"),
            "ts": payload.get("ts") or utcnow(),
        })

    def append_audit_event(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if payload.get("idempotency_key"):
            existing = self.get_audit_event_by_key(payload.get("idempotency_key"))
            if existing:
                return existing
        insert = self.audit_insert(payload)
        try:
            self.commit_changes(inserts=[insert])
        except UniqueConflict:
            return self.get_audit_event_by_key(payload.get("idempotency_key"))
        return self._deserialize_audit_event(
            self._fetchone("SELECT * FROM audit_events WHERE id = ?", (insert.values["id"],))
        )

    def get_audit_event_by_key(self, idempotency_key: Optional[str]) -> Optional[Dict[str, Any]]:
        if not idempotency_key:
            return None
        row = self._fetchone(
            "SELECT * FROM audit_events WHERE idempotency_key = ?", (idempotency_key,)
        )
        return self._deserialize_audit_event(row) if row else None

    def list_audit_events(self, bill_id: str) -> List[Dict[str, Any]]:
        rows = self._fetchall(
            "SELECT * FROM audit_events WHERE bill_id = ? ORDER BY ts ASC",
            (bill_id,),
        )
        return [self._deserialize_audit_event(row) for row in rows]

    def _deserialize_audit_event(self, row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        raw = row.get("payload_json")
        if isinstance(raw, str):
            try:
                row["payload_json"] = json.loads(raw)
            except json.JSONDecodeError:
                row["payload_json"] = {}
        return row


_DB_INSTANCE: Optional[BillPayDB] = None


def get_db() -> BillPayDB:
    global _DB_INSTANCE
    if _DB_INSTANCE is None:
        _DB_INSTANCE = BillPayDB(db_path=os.getenv("BILLPAY_DB_PATH", "billpay.db"))
    return _DB_INSTANCE
