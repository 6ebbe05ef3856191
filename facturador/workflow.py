"""
Flujo de autorización de comprobantes: pending -> processing -> completed | error

Garantías:
- Un comprobante completado nunca vuelve a pedir CAE (guardia CAS en SQLite).
- En este proceso, un comprobante se procesa de a un hilo (lock no bloqueante).
- Entre procesos, sólo el intento dueño (current_attempt_id) puede pedir número o cerrar.
- Número de comprobante + solicitud de CAE bajo un lock por (CUIT, punto de venta, tipo).
- Las fallas clasificadas se guardan en el comprobante y se devuelven, no se lanzan.
"""
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from app.afip_client.config import AfipConfig
from app.afip_client.exceptions import (
    AfipUnavailable,
    AuthRejected,
    AuthUnavailable,
    BusinessRejected,
    ConfigurationError,
    InvoiceDataError,
    TicketRejected,
)
from app.afip_client.models import (
    BranchFiscalConfig,
    CAEAccepted,
    CAERejected,
    CAEResult,
    InvoicePayload,
    Sale,
)
from app.afip_client.payload import build_invoice_payload, determine_letter
from app.afip_client.wire_client import FiscalWireClient

from .config_registry import ConfigRegistry
from .db import Database, to_iso, utcnow
from .errors import InvoiceBusy, InvoiceNotFound, InvoiceStateError
from .models import (
    REASON_AUTH_REJECTED,
    REASON_AUTH_UNAVAILABLE,
    REASON_BUSINESS_REJECTED,
    REASON_CONFIGURATION,
    REASON_INTERRUPTED,
    REASON_SEQUENCE_CONFLICT,
    REASON_UNAVAILABLE,
    RETRYABLE_REASONS,
    STATE_COMPLETED,
    STATE_ERROR,
    STATE_PENDING,
    STATE_PROCESSING,
    InvoiceRecord,
    InvoiceStatus,
    is_transition_allowed,
)
from .tickets import TicketManager

logger = logging.getLogger(__name__)

ARGENTINA_TZ = timezone(timedelta(hours=-3))
STATUS_LOG_ENTRIES = 5


class _Failure(Exception):
    """Resultado clasificado de un intento fallido (uso interno)"""
    def __init__(self, reason: str, detail: str):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}")


class _AttemptSuperseded(Exception):
    """El intento perdió el comprobante: lo reclamaron y hay otro intento vigente"""


def classify_exception(exc: Exception) -> Tuple[str, str]:
    """(motivo, detalle) para una excepción de AFIP o de configuración"""
    # CredentialsNotConfigured es ConfigurationError y AuthUnavailable: manda configuración
    if isinstance(exc, ConfigurationError):
        return REASON_CONFIGURATION, exc.message
    if isinstance(exc, AuthUnavailable):
        return REASON_AUTH_UNAVAILABLE, exc.message
    if isinstance(exc, AuthRejected):
        return REASON_AUTH_REJECTED, exc.message
    if isinstance(exc, AfipUnavailable):
        return REASON_UNAVAILABLE, exc.message
    if isinstance(exc, BusinessRejected):
        detail = "; ".join(f"[{code}] {text}" for code, text in exc.reasons) or exc.message
        return REASON_BUSINESS_REJECTED, detail
    raise TypeError(f"Excepción no clasificable: {type(exc).__name__}")


class _LockTable:
    """Locks por clave; la entrada se borra cuando nadie la tiene ni la espera"""

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: Dict[Any, List[Any]] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    @contextmanager
    def hold(self, key: Any, blocking: bool = True) -> Iterator[bool]:
        """Entrega True si se tomó el lock (con blocking=False puede ser False)"""
        with self._guard:
            entry = self._entries.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        acquired = entry[0].acquire(blocking)
        try:
            yield acquired
        finally:
            if acquired:
                entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[key]


class InvoiceWorkflow:
    """Crea comprobantes para ventas y los lleva hasta el CAE"""

    def __init__(
        self,
        db: Database,
        registry: ConfigRegistry,
        tickets: TicketManager,
        wire_client: FiscalWireClient,
        config: AfipConfig,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.registry = registry
        self.tickets = tickets
        self.wire_client = wire_client
        self.config = config
        self.now_fn = now_fn
        self._invoice_locks = _LockTable()
        self._sequence_locks = _LockTable()

    # ---------------------------------------------------------------------
    # Locks en proceso
    # ---------------------------------------------------------------------
    def _invoice_lock(self, invoice_id: int, blocking: bool = False):
        return self._invoice_locks.hold(invoice_id, blocking=blocking)

    def _sequence_lock(self, cuit: str, punto_venta: int, cbte_tipo: int):
        return self._sequence_locks.hold((cuit, punto_venta, cbte_tipo))

    # ---------------------------------------------------------------------
    # Lectura
    # ---------------------------------------------------------------------
    def _now_iso(self) -> str:
        return to_iso(self.now_fn())

    def _issue_date(self) -> date:
        return self.now_fn().astimezone(ARGENTINA_TZ).date()

    def get(self, invoice_id: int) -> InvoiceRecord:
        with self.db.connect() as con:
            row = con.execute("SELECT * FROM invoices WHERE id=?", (invoice_id,)).fetchone()
        if row is None:
            raise InvoiceNotFound(invoice_id)
        return InvoiceRecord.from_row(row)

    def find_by_sale(self, sale_id: str) -> Optional[InvoiceRecord]:
        with self.db.connect() as con:
            row = con.execute("SELECT * FROM invoices WHERE sale_id=?", (sale_id,)).fetchone()
        return InvoiceRecord.from_row(row) if row else None

    def _log_entry(self, event: str, detail: str = "", **extra: Any) -> Dict[str, Any]:
        entry = {"at": self._now_iso(), "event": event}
        if detail:
            entry["detail"] = detail
        entry.update(extra)
        return entry

    def _append_log(self, con: sqlite3.Connection, invoice_id: int, entry: Dict[str, Any]) -> str:
        row = con.execute("SELECT log_json FROM invoices WHERE id=?", (invoice_id,)).fetchone()
        log = json.loads(row["log_json"] or "[]") if row else []
        log.append(entry)
        # Se descartan las entradas más viejas
        log = log[-self.config.invoice_log_max:]
        return json.dumps(log, ensure_ascii=False)

    # ---------------------------------------------------------------------
    # Alta
    # ---------------------------------------------------------------------
    def create_invoice_for_sale(self, sale: Sale) -> InvoiceRecord:
        """
        Crea el comprobante en pending para una venta. Idempotente por sale_id.

        Raises:
            ConfigurationError: La sucursal no tiene configuración fiscal activa
            InvoiceDataError: La venta no admite ninguna letra válida
        """
        existing = self.find_by_sale(sale.id)
        if existing:
            logger.info(f"Venta {sale.id}: ya tiene comprobante {existing.id} ({existing.state})")
            return existing

        branch_config = self.registry.active_config(sale.branch_id)
        letter = determine_letter(sale, branch_config.iva_condition)
        now = self._now_iso()
        log_json = json.dumps([self._log_entry("created", f"Letra {letter}")], ensure_ascii=False)

        try:
            with self.db.connect() as con:
                cur = con.execute(
                    """
                    INSERT INTO invoices (
                        sale_id, branch_id, cuit, punto_venta, letter, state,
                        retryable, attempts, log_json, sale_snapshot, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, 'pending', 1, 0, ?, ?, ?, ?)
                    """,
                    (
                        sale.id,
                        sale.branch_id,
                        branch_config.cuit,
                        branch_config.punto_venta,
                        letter,
                        log_json,
                        json.dumps(sale.to_dict(), ensure_ascii=False),
                        now,
                        now,
                    ),
                )
                invoice_id = cur.lastrowid
        except sqlite3.IntegrityError:
            # Otra solicitud creó el comprobante de esta venta en paralelo
            existing = self.find_by_sale(sale.id)
            if existing is None:
                raise
            return existing

        logger.info(
            f"Venta {sale.id}: comprobante {invoice_id} creado (letra {letter}, "
            f"sucursal {sale.branch_id}, CUIT {branch_config.cuit}, PtoVta {branch_config.punto_venta})"
        )
        return self.get(invoice_id)

    # ---------------------------------------------------------------------
    # Procesamiento
    # ---------------------------------------------------------------------
    def process_invoice(self, invoice_id: int, trigger: str = "manual") -> InvoiceRecord:
        """
        Intenta obtener el CAE del comprobante.

        Raises:
            InvoiceNotFound: No existe el comprobante
            InvoiceBusy: Otro hilo de este proceso lo está procesando
            InvoiceStateError: Está en processing o completed
        """
        with self._invoice_lock(invoice_id) as acquired:
            if not acquired:
                raise InvoiceBusy(invoice_id)
            return self._process_locked(invoice_id, trigger)

    def _begin_attempt(self, invoice_id: int, trigger: str) -> Tuple[InvoiceRecord, int]:
        """CAS pending|error -> processing, suma el intento y abre la fila de intento"""
        now = self._now_iso()
        with self.db.connect(immediate=True) as con:
            row = con.execute("SELECT * FROM invoices WHERE id=?", (invoice_id,)).fetchone()
            if row is None:
                raise InvoiceNotFound(invoice_id)
            previous_state = row["state"]
            if not is_transition_allowed(previous_state, STATE_PROCESSING):
                raise InvoiceStateError(invoice_id, previous_state, STATE_PROCESSING)

            attempt_no = int(row["attempts"]) + 1
            log_json = self._append_log(
                con, invoice_id, self._log_entry("attempt_started", f"trigger={trigger}", attempt=attempt_no)
            )
            attempt_cur = con.execute(
                """
                INSERT INTO invoice_attempts (invoice_id, triggered_by, previous_state, started_at)
                VALUES (?, ?, ?, ?)
                """,
                (invoice_id, trigger, previous_state, now),
            )
            attempt_id = attempt_cur.lastrowid
            cur = con.execute(
                """
                UPDATE invoices
                SET state='processing', attempts=attempts+1, processing_started_at=?,
                    current_attempt_id=?, log_json=?, updated_at=?
                WHERE id=? AND state IN ('pending', 'error')
                """,
                (now, attempt_id, log_json, now, invoice_id),
            )
            if cur.rowcount != 1:
                raise InvoiceStateError(invoice_id, previous_state, STATE_PROCESSING)
            row = con.execute("SELECT * FROM invoices WHERE id=?", (invoice_id,)).fetchone()
        return InvoiceRecord.from_row(row), attempt_id

    def _process_locked(self, invoice_id: int, trigger: str) -> InvoiceRecord:
        record, attempt_id = self._begin_attempt(invoice_id, trigger)
        logger.info(
            f"Comprobante {invoice_id}: intento {record.attempts} ({trigger}), venta {record.sale_id}"
        )

        try:
            result = self._attempt(record)
        except _AttemptSuperseded:
            logger.error(
                f"Comprobante {invoice_id}: el intento {attempt_id} fue reclamado por otra ejecución, "
                "no se solicita CAE"
            )
            return self.get(invoice_id)
        except _Failure as failure:
            return self._finish_error(record, attempt_id, failure.reason, failure.detail)
        except (ConfigurationError, AfipUnavailable, AuthRejected, BusinessRejected) as e:
            reason, detail = classify_exception(e)
            return self._finish_error(record, attempt_id, reason, detail)
        except Exception as e:
            # Nunca dejar el comprobante en processing por un error inesperado
            logger.exception(f"Comprobante {invoice_id}: error inesperado")
            self._finish_error(record, attempt_id, REASON_INTERRUPTED, f"{type(e).__name__}: {e}")
            raise

        return self._finish_success(record, attempt_id, result)

    def _attempt(self, record: InvoiceRecord) -> CAEAccepted:
        sale = record.sale
        payload = build_invoice_payload(sale, record.letter, self._issue_date())
        branch_config = BranchFiscalConfig(
            branch_id=record.branch_id,
            cuit=record.cuit,
            punto_venta=record.punto_venta,
        )

        with self._sequence_lock(record.cuit, record.punto_venta, payload.cbte_tipo):
            result = self._with_ticket(
                record.cuit,
                lambda ticket: self._authorize(
                    ticket, record.id, record.current_attempt_id, branch_config, payload
                ),
            )

        if isinstance(result, CAERejected):
            if result.sequence_conflict:
                raise _Failure(REASON_SEQUENCE_CONFLICT, result.summary())
            raise _Failure(REASON_BUSINESS_REJECTED, result.summary())
        return result

    def _with_ticket(self, cuit: str, call: Callable[[Any], CAEResult]) -> CAEResult:
        """Ejecuta la llamada con ticket; si AFIP lo rechaza, renueva una vez y reintenta"""
        ticket = self.tickets.get_ticket(cuit)
        try:
            return call(ticket)
        except TicketRejected as e:
            logger.warning(f"CUIT {cuit}: ticket rechazado en WSFE ({e.code}), renovando y reintentando una vez")
            self.tickets.invalidate(cuit)
            ticket = self.tickets.get_ticket(cuit)
            return call(ticket)

    def _authorize(
        self,
        ticket,
        invoice_id: int,
        attempt_id: int,
        branch_config: BranchFiscalConfig,
        payload: InvoicePayload,
    ) -> CAEResult:
        current = self.get(invoice_id)
        if current.attempted_number:
            adopted = self._reconcile(ticket, current, branch_config, payload)
            if adopted is not None:
                return adopted

        number = self.wire_client.last_authorized_number(
            ticket, branch_config.punto_venta, payload.cbte_tipo
        ) + 1
        issue = payload.issue_date.strftime("%Y%m%d")
        with self.db.connect() as con:
            cur = con.execute(
                """
                UPDATE invoices SET attempted_number=?, attempted_date=?, updated_at=?
                WHERE id=? AND state='processing' AND current_attempt_id=?
                """,
                (number, issue, self._now_iso(), invoice_id, attempt_id),
            )
            if cur.rowcount != 1:
                raise _AttemptSuperseded(invoice_id)
        return self.wire_client.authorize_invoice(ticket, branch_config, payload, invoice_number=number)

    def _reconcile(
        self,
        ticket,
        record: InvoiceRecord,
        branch_config: BranchFiscalConfig,
        payload: InvoicePayload,
    ) -> Optional[CAEAccepted]:
        """
        Un intento anterior envió attempted_number sin respuesta confirmada. Si AFIP
        tiene ese número con los mismos datos, se adopta su CAE en vez de pedir otro.
        """
        number = record.attempted_number
        found = self.wire_client.consult_invoice(ticket, branch_config.punto_venta, payload.cbte_tipo, number)
        if not found:
            logger.info(f"Comprobante {record.id}: número {number} no emitido en AFIP, se pide uno nuevo")
            return None

        expected_date = record.attempted_date or payload.issue_date.strftime("%Y%m%d")
        same_doc = _same_doc_number(found.get("doc_nro"), payload.doc_nro)
        matches = (
            found.get("cae")
            and found.get("resultado") in (None, "A")
            and found.get("imp_total") is not None
            and Decimal(found["imp_total"]) == payload.imp_total
            and found.get("doc_tipo") == payload.doc_tipo
            and same_doc
            and found.get("cbte_fch") == expected_date
        )
        if not matches:
            logger.warning(
                f"Comprobante {record.id}: el número {number} en AFIP corresponde a otro comprobante, "
                "se pide uno nuevo"
            )
            return None

        logger.info(f"Comprobante {record.id}: reconciliado con número {number} ya autorizado en AFIP")
        return CAEAccepted(
            cae=found["cae"],
            cae_expiry=found.get("cae_expiry"),
            invoice_number=number,
            observations=(("RECONCILED", f"CAE recuperado por FECompConsultar para número {number}"),),
        )

    def _close_attempt(self, con: sqlite3.Connection, attempt_id: int, result: str, detail: str) -> None:
        con.execute(
            "UPDATE invoice_attempts SET finished_at=?, result=?, detail=? WHERE id=? AND finished_at IS NULL",
            (self._now_iso(), result, detail, attempt_id),
        )

    def _finish_success(self, record: InvoiceRecord, attempt_id: int, result: CAEAccepted) -> InvoiceRecord:
        now = self._now_iso()
        cae_expiry = result.cae_expiry.isoformat() if result.cae_expiry else None
        detail = f"CAE {result.cae} número {result.invoice_number}"
        if result.observations:
            detail += " obs: " + "; ".join(f"[{c}] {m}" for c, m in result.observations)
        with self.db.connect(immediate=True) as con:
            log_json = self._append_log(con, record.id, self._log_entry("completed", detail))
            cur = con.execute(
                """
                UPDATE invoices
                SET state='completed', invoice_number=?, cae=?, cae_expiry=?,
                    last_error_reason=NULL, last_error_detail=NULL, retryable=0,
                    processing_started_at=NULL, current_attempt_id=NULL, log_json=?, updated_at=?
                WHERE id=? AND state='processing' AND current_attempt_id=?
                """,
                (result.invoice_number, result.cae, cae_expiry, log_json, now, record.id, attempt_id),
            )
            self._close_attempt(con, attempt_id, STATE_COMPLETED, detail)
        if cur.rowcount != 1:
            # Lo reclamaron como colgado mientras esperábamos a AFIP: el intento vigente
            # lo reconcilia por attempted_number
            logger.error(
                f"Comprobante {record.id}: CAE {result.cae} recibido pero el intento ya no era el vigente; "
                "se recuperará por reconciliación"
            )
        else:
            logger.info(f"Comprobante {record.id}: completado, {detail}")
        return self.get(record.id)

    def _finish_error(self, record: InvoiceRecord, attempt_id: int, reason: str, detail: str) -> InvoiceRecord:
        now = self._now_iso()
        retryable = reason in RETRYABLE_REASONS
        with self.db.connect(immediate=True) as con:
            log_json = self._append_log(con, record.id, self._log_entry("error", detail, reason=reason))
            cur = con.execute(
                """
                UPDATE invoices
                SET state='error', last_error_reason=?, last_error_detail=?, retryable=?,
                    processing_started_at=NULL, current_attempt_id=NULL, log_json=?, updated_at=?
                WHERE id=? AND state='processing' AND current_attempt_id=?
                """,
                (reason, detail, 1 if retryable else 0, log_json, now, record.id, attempt_id),
            )
            self._close_attempt(con, attempt_id, reason, detail)
        if cur.rowcount != 1:
            logger.error(
                f"Comprobante {record.id}: {reason} del intento {attempt_id} descartado, "
                "el comprobante ya tiene otro intento vigente"
            )
            return self.get(record.id)
        log = logger.warning if retryable else logger.error
        log(f"Comprobante {record.id}: {reason} ({'reintentable' if retryable else 'requiere operador'}): {detail}")
        return self.get(record.id)

    # ---------------------------------------------------------------------
    # Consulta / corrección
    # ---------------------------------------------------------------------
    def get_invoice_status(self, invoice_id: int) -> InvoiceStatus:
        record = self.get(invoice_id)
        status = InvoiceStatus(
            invoice_id=record.id,
            sale_id=record.sale_id,
            state=record.state,
            status="in_progress" if record.state in (STATE_PENDING, STATE_PROCESSING) else record.state,
            letter=record.letter,
            attempts=record.attempts,
        )
        if record.state == STATE_COMPLETED:
            status.invoice_number = record.invoice_number
            status.cae = record.cae
            status.cae_expiry = record.cae_expiry
        elif record.state == STATE_ERROR:
            status.reason = record.last_error_reason
            status.detail = record.last_error_detail
            status.retryable = record.retryable
            status.recent_log = record.log[-STATUS_LOG_ENTRIES:]
        return status

    def correct_sale_data(self, invoice_id: int, sale: Sale) -> InvoiceRecord:
        """
        Reemplaza la venta de un comprobante rechazado por AFIP para reintentarlo.

        Raises:
            InvoiceStateError: Si no está en error por BUSINESS_REJECTED
            InvoiceDataError: Si la venta corregida no corresponde o no admite letra válida
            ConfigurationError: Si la sucursal ya no tiene configuración activa
        """
        record = self.get(invoice_id)
        if record.state != STATE_ERROR or record.last_error_reason != REASON_BUSINESS_REJECTED:
            raise InvoiceStateError(invoice_id, record.state, "corrección de datos")
        if sale.id != record.sale_id or sale.branch_id != record.branch_id:
            raise InvoiceDataError("La venta corregida no corresponde al comprobante (sale_id/branch_id)")

        branch_config = self.registry.active_config(record.branch_id)
        letter = determine_letter(sale, branch_config.iva_condition)
        now = self._now_iso()
        with self.db.connect(immediate=True) as con:
            log_json = self._append_log(con, invoice_id, self._log_entry("sale_corrected", f"Letra {letter}"))
            cur = con.execute(
                """
                UPDATE invoices
                SET sale_snapshot=?, letter=?, retryable=1, attempts=0,
                    attempted_number=NULL, attempted_date=NULL, log_json=?, updated_at=?
                WHERE id=? AND state='error'
                """,
                (json.dumps(sale.to_dict(), ensure_ascii=False), letter, log_json, now, invoice_id),
            )
            if cur.rowcount != 1:
                raise InvoiceStateError(invoice_id, record.state, "corrección de datos")
        logger.info(f"Comprobante {invoice_id}: venta corregida, queda reintentable")
        return self.get(invoice_id)

    # ---------------------------------------------------------------------
    # Soporte para el barrido de reintentos
    # ---------------------------------------------------------------------
    def find_stale(self, stale_before: datetime) -> List[int]:
        with self.db.connect() as con:
            rows = con.execute(
                """
                SELECT id FROM invoices
                WHERE state='processing' AND processing_started_at < ?
                ORDER BY processing_started_at
                """,
                (to_iso(stale_before),),
            ).fetchall()
        return [int(row["id"]) for row in rows]

    def reclaim_stale(self, invoice_id: int, stale_before: datetime) -> bool:
        """processing colgado (proceso caído) -> error INTERRUPTED, reintentable"""
        with self._invoice_lock(invoice_id) as acquired:
            if not acquired:
                # Lo está procesando este mismo proceso: no está colgado
                return False
            now = self._now_iso()
            detail = f"Procesamiento interrumpido (iniciado antes de {to_iso(stale_before)})"
            with self.db.connect(immediate=True) as con:
                log_json = self._append_log(
                    con, invoice_id, self._log_entry("error", detail, reason=REASON_INTERRUPTED)
                )
                cur = con.execute(
                    """
                    UPDATE invoices
                    SET state='error', last_error_reason=?, last_error_detail=?, retryable=1,
                        processing_started_at=NULL, current_attempt_id=NULL, log_json=?, updated_at=?
                    WHERE id=? AND state='processing' AND processing_started_at < ?
                    """,
                    (REASON_INTERRUPTED, detail, log_json, now, invoice_id, to_iso(stale_before)),
                )
                if cur.rowcount:
                    con.execute(
                        """
                        UPDATE invoice_attempts SET finished_at=?, result=?, detail=?
                        WHERE invoice_id=? AND finished_at IS NULL
                        """,
                        (now, REASON_INTERRUPTED, detail, invoice_id),
                    )
        if cur.rowcount:
            logger.warning(f"Comprobante {invoice_id}: processing colgado, pasa a error INTERRUPTED")
        return bool(cur.rowcount)

    def retry_candidates(self, max_attempts: int, limit: int) -> List[InvoiceRecord]:
        with self.db.connect() as con:
            rows = con.execute(
                """
                SELECT * FROM invoices
                WHERE state='pending'
                   OR (state='error' AND retryable=1 AND attempts < ?)
                ORDER BY created_at, id
                LIMIT ?
                """,
                (max_attempts, limit),
            ).fetchall()
        return [InvoiceRecord.from_row(row) for row in rows]

    def needs_attention(self, max_attempts: int) -> List[Dict[str, Any]]:
        """Comprobantes en error que el barrido ya no toca (tope de intentos o no reintentables)"""
        with self.db.connect() as con:
            rows = con.execute(
                """
                SELECT id, sale_id, branch_id, last_error_reason, last_error_detail, attempts, retryable
                FROM invoices
                WHERE state='error' AND (retryable=0 OR attempts >= ?)
                ORDER BY created_at, id
                """,
                (max_attempts,),
            ).fetchall()
        return [
            {
                "invoice_id": int(row["id"]),
                "sale_id": row["sale_id"],
                "branch_id": row["branch_id"],
                "reason": row["last_error_reason"],
                "detail": row["last_error_detail"],
                "attempts": int(row["attempts"]),
                "retryable": bool(row["retryable"]),
            }
            for row in rows
        ]

    def attempts_history(self, invoice_id: int) -> List[Dict[str, Any]]:
        self.get(invoice_id)
        with self.db.connect() as con:
            rows = con.execute(
                "SELECT * FROM invoice_attempts WHERE invoice_id=? ORDER BY id",
                (invoice_id,),
            ).fetchall()
        return [dict(row) for row in rows]


def _same_doc_number(a: Optional[str], b: Optional[str]) -> bool:
    a = (a or "0").strip().lstrip("0") or "0"
    b = (b or "0").strip().lstrip("0") or "0"
    return a == b
