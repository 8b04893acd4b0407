"""
InvoiceFlow Database

Single source of truth for invoices, their audit trails, and vendor rate contracts.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

try:
    import psycopg
    from psycopg.rows import dict_row
    HAS_POSTGRES = True
except ImportError:  # pragma: no cover
    psycopg = None
    dict_row = None
    HAS_POSTGRES = False

from invoiceflow.core.audit import AuditEntry
from invoiceflow.core.config import get_settings
from invoiceflow.core.models import Invoice, RateContract
from invoiceflow.services.errors import ConflictError, PersistenceError

logger = logging.getLogger(__name__)

_DB_ERRORS = (sqlite3.Error,) + ((psycopg.Error,) if HAS_POSTGRES else ())

_INVOICE_COLUMNS = (
    "id", "vendor_id", "vendor_name", "submitted_by_user_id", "invoice_number",
    "invoice_date", "amount", "currency", "project", "assigned_pm",
    "assigned_finance_user", "status", "line_items", "pm_approval",
    "finance_approval", "version", "created_at", "updated_at",
)

_AUDIT_COLUMNS = (
    "id", "invoice_id", "sequence", "action", "actor_id", "actor_role",
    "timestamp", "previous_status", "new_status", "notes", "request_metadata",
    "previous_checksum", "checksum",
)

_SQLITE_AUDIT_GUARDS = (
    """
    CREATE TRIGGER IF NOT EXISTS audit_entries_no_update
    BEFORE UPDATE ON audit_entries
    BEGIN
        SELECT RAISE(ABORT, 'audit entries are append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS audit_entries_no_delete
    BEFORE DELETE ON audit_entries
    BEGIN
        SELECT RAISE(ABORT, 'audit entries are append-only');
    END
    """,
)

_POSTGRES_AUDIT_GUARDS = (
    """
    CREATE OR REPLACE FUNCTION invoiceflow_audit_append_only() RETURNS trigger AS $$
    BEGIN
        RAISE EXCEPTION 'audit entries are append-only';
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS audit_entries_append_only ON audit_entries",
    """
    CREATE TRIGGER audit_entries_append_only
    BEFORE UPDATE OR DELETE ON audit_entries
    FOR EACH ROW EXECUTE FUNCTION invoiceflow_audit_append_only()
    """,
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _decode_json(raw: Any, default: Any) -> Any:
    if isinstance(raw, (dict, list)):
        return raw
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return default
    return default


def _invoice_values(invoice: Invoice) -> Dict[str, Any]:
    return {
        "id": invoice.id,
        "vendor_id": invoice.vendor_id,
        "vendor_name": invoice.vendor_name,
        "submitted_by_user_id": invoice.submitted_by_user_id,
        "invoice_number": invoice.invoice_number,
        "invoice_date": invoice.invoice_date,
        "amount": invoice.amount,
        "currency": invoice.currency,
        "project": invoice.project,
        "assigned_pm": invoice.assigned_pm,
        "assigned_finance_user": invoice.assigned_finance_user,
        "status": invoice.status.value,
        "line_items": json.dumps([item.to_dict() for item in invoice.line_items]),
        "pm_approval": json.dumps(invoice.pm_approval.to_dict()),
        "finance_approval": json.dumps(invoice.finance_approval.to_dict()),
        "version": invoice.version,
        "created_at": invoice.created_at,
        "updated_at": invoice.updated_at,
    }


def _deserialize_invoice(row: Dict[str, Any]) -> Invoice:
    row = dict(row)
    row["line_items"] = _decode_json(row.get("line_items"), [])
    row["pm_approval"] = _decode_json(row.get("pm_approval"), {})
    row["finance_approval"] = _decode_json(row.get("finance_approval"), {})
    return Invoice.from_record(row)


def _deserialize_contract(row: Dict[str, Any]) -> RateContract:
    row = dict(row)
    row["rates"] = _decode_json(row.get("rates"), [])
    return RateContract.from_record(row)


class InvoiceTransaction:
    """
    One atomic unit of work. Invoice writes and audit appends issued through
    the same transaction commit or roll back together.
    """

    def __init__(self, db: "InvoiceDB", conn):
        self.db = db
        self.conn = conn
        self.cur = conn.cursor()

    def _execute(self, sql: str, params: Iterable[Any] = ()):
        self.cur.execute(self.db._prepare_sql(sql), tuple(params))
        return self.cur

    def insert_invoice(self, invoice: Invoice) -> None:
        values = _invoice_values(invoice)
        placeholders = ", ".join("?" for _ in _INVOICE_COLUMNS)
        self._execute(
            f"INSERT INTO invoices ({', '.join(_INVOICE_COLUMNS)}) VALUES ({placeholders})",
            (values[col] for col in _INVOICE_COLUMNS),
        )

    def update_invoice(self, invoice: Invoice, expected_status: str, expected_version: int) -> Invoice:
        """
        Conditional write: applies only if the stored status and version still
        match what the caller read. Raises ConflictError otherwise.
        """
        updated = replace(
            invoice,
            version=expected_version + 1,
            updated_at=_now(),
            stored_status=invoice.status.value,
        )
        values = _invoice_values(updated)
        cur = self._execute(
            """
            UPDATE invoices
            SET status = ?, amount = ?, line_items = ?, pm_approval = ?, finance_approval = ?,
                assigned_pm = ?, assigned_finance_user = ?, version = ?, updated_at = ?
            WHERE id = ? AND status = ? AND version = ?
            """,
            (
                values["status"], values["amount"], values["line_items"], values["pm_approval"],
                values["finance_approval"], values["assigned_pm"],
                values["assigned_finance_user"], values["version"], values["updated_at"],
                invoice.id, expected_status, expected_version,
            ),
        )
        if cur.rowcount == 0:
            raise ConflictError(invoice.id)
        return updated

    def last_audit_entry(self, invoice_id: str) -> Optional[AuditEntry]:
        cur = self._execute(
            "SELECT * FROM audit_entries WHERE invoice_id = ? ORDER BY sequence DESC LIMIT 1",
            (invoice_id,),
        )
        row = cur.fetchone()
        return AuditEntry.from_record(dict(row)) if row else None

    def insert_audit_entry(self, entry: AuditEntry) -> None:
        record = entry.to_record()
        placeholders = ", ".join("?" for _ in _AUDIT_COLUMNS)
        self._execute(
            f"INSERT INTO audit_entries ({', '.join(_AUDIT_COLUMNS)}) VALUES ({placeholders})",
            (record[col] for col in _AUDIT_COLUMNS),
        )


class InvoiceDB:
    def __init__(
        self,
        db_path: str = "invoiceflow.db",
        dsn: Optional[str] = None,
        allow_sqlite_fallback: bool = True,
    ):
        self.dsn = dsn
        self.db_path = db_path
        self.allow_sqlite_fallback = allow_sqlite_fallback
        normalized = (dsn or "").strip().lower()
        self.use_postgres = bool(
            HAS_POSTGRES
            and normalized
            and (normalized.startswith("postgres://") or normalized.startswith("postgresql://"))
        )
        self._initialized = False
        self._fallback_warned = False

    def _sqlite_connection(self):
        # Autocommit mode so transaction() can issue BEGIN IMMEDIATE itself.
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None, check_same_thread=False)
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
                        "Set INVOICEFLOW_DB_FALLBACK_SQLITE=false to disable fallback.",
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

    @contextmanager
    def transaction(self, operation: str = "transaction"):
        """Yield an InvoiceTransaction; commit on success, roll back on any error."""
        self.initialize()
        with self.connect() as conn:
            if not self.use_postgres:
                # Take the write lock up front so concurrent writers queue instead of deadlocking.
                conn.execute("BEGIN IMMEDIATE")
            tx = InvoiceTransaction(self, conn)
            try:
                yield tx
                conn.commit()
            except _DB_ERRORS as exc:
                conn.rollback()
                logger.error("Rolled back %s: %s", operation, exc)
                raise PersistenceError(operation, str(exc)) from exc
            except Exception:
                conn.rollback()
                raise

    def initialize(self) -> None:
        if self._initialized:
            return
        with self.connect() as conn:
            cur = conn.cursor()

            cur.execute("""
                CREATE TABLE IF NOT EXISTS invoices (
                    id TEXT PRIMARY KEY,
                    vendor_id TEXT,
                    vendor_name TEXT,
                    submitted_by_user_id TEXT,
                    invoice_number TEXT,
                    invoice_date TEXT,
                    amount REAL,
                    currency TEXT DEFAULT 'INR',
                    project TEXT,
                    assigned_pm TEXT,
                    assigned_finance_user TEXT,
                    status TEXT NOT NULL,
                    line_items TEXT,
                    pm_approval TEXT,
                    finance_approval TEXT,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS audit_entries (
                    id TEXT PRIMARY KEY,
                    invoice_id TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    action TEXT NOT NULL,
                    actor_id TEXT NOT NULL,
                    actor_role TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    previous_status TEXT,
                    new_status TEXT NOT NULL,
                    notes TEXT,
                    request_metadata TEXT,
                    previous_checksum TEXT,
                    checksum TEXT NOT NULL,
                    UNIQUE(invoice_id, sequence)
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS rate_contracts (
                    id TEXT PRIMARY KEY,
                    vendor_id TEXT NOT NULL,
                    project_id TEXT,
                    status TEXT NOT NULL DEFAULT 'ACTIVE',
                    currency TEXT DEFAULT 'INR',
                    effective_from TEXT,
                    effective_to TEXT,
                    rates TEXT,
                    created_at TEXT
                )
            """)

            cur.execute("CREATE INDEX IF NOT EXISTS idx_invoices_status ON invoices(status)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_invoices_vendor ON invoices(vendor_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_rate_contracts_vendor ON rate_contracts(vendor_id, status)")

            for statement in (_POSTGRES_AUDIT_GUARDS if self.use_postgres else _SQLITE_AUDIT_GUARDS):
                cur.execute(statement)

            conn.commit()
        self._initialized = True

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        self.initialize()
        sql = self._prepare_sql("SELECT * FROM invoices WHERE id = ?")
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (invoice_id,))
            row = cur.fetchone()
        return _deserialize_invoice(dict(row)) if row else None

    def list_invoices(
        self,
        statuses: Optional[Iterable[str]] = None,
        vendor_id: Optional[str] = None,
        limit: int = 200,
    ) -> List[Invoice]:
        self.initialize()
        clauses: List[str] = []
        params: List[Any] = []
        statuses = list(statuses or [])
        if statuses:
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        if vendor_id:
            clauses.append("vendor_id = ?")
            params.append(vendor_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = self._prepare_sql(f"SELECT * FROM invoices {where} ORDER BY created_at DESC LIMIT ?")
        params.append(limit)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, tuple(params))
            rows = cur.fetchall()
        return [_deserialize_invoice(dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def list_audit_entries(self, invoice_id: str) -> List[AuditEntry]:
        self.initialize()
        sql = self._prepare_sql(
            "SELECT * FROM audit_entries WHERE invoice_id = ? ORDER BY sequence ASC"
        )
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (invoice_id,))
            rows = cur.fetchall()
        return [AuditEntry.from_record(dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Rate contracts
    # ------------------------------------------------------------------

    def save_rate_contract(self, contract: RateContract) -> RateContract:
        self.initialize()
        contract_id = contract.id or f"RC-{uuid.uuid4().hex}"
        sql = self._prepare_sql("""
            INSERT INTO rate_contracts
            (id, vendor_id, project_id, status, currency, effective_from, effective_to, rates, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (
                contract_id,
                contract.vendor_id,
                contract.project_id,
                contract.status.value,
                contract.currency,
                contract.effective_from,
                contract.effective_to,
                json.dumps([r.to_dict() for r in contract.rates]),
                _now(),
            ))
            conn.commit()
        return self.get_rate_contract(contract_id)

    def get_rate_contract(self, contract_id: str) -> Optional[RateContract]:
        self.initialize()
        sql = self._prepare_sql("SELECT * FROM rate_contracts WHERE id = ?")
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (contract_id,))
            row = cur.fetchone()
        return _deserialize_contract(dict(row)) if row else None

    def list_rate_contracts(self, vendor_id: str, status: Optional[str] = None) -> List[RateContract]:
        self.initialize()
        sql = "SELECT * FROM rate_contracts WHERE vendor_id = ?"
        params: List[Any] = [vendor_id]
        if status:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY created_at ASC"
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(self._prepare_sql(sql), tuple(params))
            rows = cur.fetchall()
        return [_deserialize_contract(dict(row)) for row in rows]


_DB_INSTANCE: Optional[InvoiceDB] = None


def get_db() -> InvoiceDB:
    global _DB_INSTANCE
    if _DB_INSTANCE is None:
        settings = get_settings()
        _DB_INSTANCE = InvoiceDB(
            db_path=settings.db_path,
            dsn=settings.database_url,
            allow_sqlite_fallback=settings.allow_sqlite_fallback,
        )
    return _DB_INSTANCE


def reset_db() -> None:
    """Drop the cached instance so the next get_db() re-reads settings."""
    global _DB_INSTANCE
    _DB_INSTANCE = None
