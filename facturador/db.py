"""
Persistencia SQLite del facturador (configuración fiscal, tickets, comprobantes, intentos)
"""
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "data", "facturador.db")


SCHEMA = """
CREATE TABLE IF NOT EXISTS branch_fiscal_configs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    branch_id TEXT NOT NULL,
    cuit TEXT NOT NULL,
    punto_venta INTEGER NOT NULL CHECK (punto_venta > 0),
    iva_condition TEXT NOT NULL DEFAULT 'RI',
    active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- una sola configuración activa por sucursal
CREATE UNIQUE INDEX IF NOT EXISTS ux_branch_fiscal_active
    ON branch_fiscal_configs(branch_id) WHERE active = 1;

CREATE TABLE IF NOT EXISTS afip_tickets (
    cuit TEXT PRIMARY KEY,
    token TEXT NOT NULL,
    sign TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    generated_at TEXT,
    updated_at TEXT NOT NULL
);

-- quién está haciendo loginCms para el CUIT (visible para todos los procesos)
CREATE TABLE IF NOT EXISTS afip_ticket_leases (
    cuit TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    lease_until TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS invoices (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sale_id TEXT NOT NULL UNIQUE,
    branch_id TEXT NOT NULL,
    cuit TEXT NOT NULL,
    punto_venta INTEGER NOT NULL,
    letter TEXT NOT NULL CHECK (letter IN ('A', 'B', 'C')),
    state TEXT NOT NULL DEFAULT 'pending'
        CHECK (state IN ('pending', 'processing', 'completed', 'error')),
    invoice_number INTEGER,
    attempted_number INTEGER,
    attempted_date TEXT,
    cae TEXT,
    cae_expiry TEXT,
    last_error_reason TEXT,
    last_error_detail TEXT,
    retryable INTEGER NOT NULL DEFAULT 1,
    attempts INTEGER NOT NULL DEFAULT 0,
    log_json TEXT NOT NULL DEFAULT '[]',
    sale_snapshot TEXT NOT NULL,
    processing_started_at TEXT,
    -- intento dueño del processing; los cierres sólo escriben si siguen siéndolo
    current_attempt_id INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    -- CAE presente si y sólo si el comprobante está completado
    CHECK ((state = 'completed') = (cae IS NOT NULL AND cae <> ''))
);

CREATE INDEX IF NOT EXISTS idx_invoices_state ON invoices(state);
CREATE INDEX IF NOT EXISTS idx_invoices_created_at ON invoices(created_at);

CREATE TABLE IF NOT EXISTS invoice_attempts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    invoice_id INTEGER NOT NULL REFERENCES invoices(id) ON DELETE CASCADE,
    triggered_by TEXT NOT NULL,
    previous_state TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    result TEXT,
    detail TEXT
);

CREATE INDEX IF NOT EXISTS idx_invoice_attempts_invoice ON invoice_attempts(invoice_id);
"""

# Migraciones ligeras: columnas agregadas después de la primera versión del esquema
_INVOICE_COLUMNS = {
    "attempted_number": "ALTER TABLE invoices ADD COLUMN attempted_number INTEGER",
    "attempted_date": "ALTER TABLE invoices ADD COLUMN attempted_date TEXT",
    "processing_started_at": "ALTER TABLE invoices ADD COLUMN processing_started_at TEXT",
    "current_attempt_id": "ALTER TABLE invoices ADD COLUMN current_attempt_id INTEGER",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """datetime aware a ISO UTC con segundos (ordenable como texto)"""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Database:
    """Acceso a SQLite: una conexión por unidad de trabajo"""

    def __init__(self, path: Optional[str] = None):
        self.path = str(path or os.getenv("FACTURADOR_DB") or DEFAULT_DB_PATH)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(self.path, timeout=5.0)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys = ON;")
        con.execute("PRAGMA journal_mode = WAL;")
        con.execute("PRAGMA synchronous = FULL;")
        con.execute("PRAGMA busy_timeout = 5000;")
        return con

    @contextmanager
    def connect(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """
        Abre una conexión, hace commit al salir sin error y rollback si hubo excepción.

        immediate=True toma el lock de escritura al inicio (BEGIN IMMEDIATE), para
        leer-y-actualizar sin que otro proceso se cuele en el medio.
        """
        con = self._connect()
        try:
            if immediate:
                con.execute("BEGIN IMMEDIATE")
            yield con
            con.commit()
        except Exception:
            con.rollback()
            raise
        finally:
            con.close()

    def init_schema(self) -> None:
        with self.connect() as con:
            con.executescript(SCHEMA)
            cols = {row["name"] for row in con.execute("PRAGMA table_info(invoices)")}
            for column, ddl in _INVOICE_COLUMNS.items():
                if column not in cols:
                    logger.info(f"Migración: agregando columna invoices.{column}")
                    con.execute(ddl)
        logger.debug(f"Esquema SQLite listo en {self.path}")
