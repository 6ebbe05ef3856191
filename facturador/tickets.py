"""
Tickets de acceso WSAA: almacenamiento y renovación con un único login concurrente por CUIT
"""
import logging
import os
import socket
import threading
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from app.afip_client.cert_utils import (
    SigningMaterial,
    build_login_ticket_request,
    load_signing_material_for_cuit,
    sign_login_ticket_request,
)
from app.afip_client.config import AfipConfig
from app.afip_client.exceptions import AfipException, AuthUnavailable
from app.afip_client.models import AuthTicket
from app.afip_client.wire_client import FiscalWireClient

from .db import Database, from_iso, to_iso, utcnow

logger = logging.getLogger(__name__)


class TicketStore:
    """Un ticket por CUIT en afip_tickets; el más nuevo pisa al anterior"""

    def __init__(self, db: Database, now_fn=utcnow):
        self.db = db
        self.now_fn = now_fn

    @staticmethod
    def _row_to_ticket(row) -> AuthTicket:
        return AuthTicket(
            cuit=row["cuit"],
            token=row["token"],
            sign=row["sign"],
            expires_at=from_iso(row["expires_at"]),
            generated_at=from_iso(row["generated_at"]),
        )

    def load(self, cuit: str) -> Optional[AuthTicket]:
        with self.db.connect() as con:
            row = con.execute("SELECT * FROM afip_tickets WHERE cuit=?", (cuit,)).fetchone()
        return self._row_to_ticket(row) if row else None

    def save(self, ticket: AuthTicket) -> None:
        with self.db.connect() as con:
            con.execute(
                """
                INSERT INTO afip_tickets (cuit, token, sign, expires_at, generated_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(cuit) DO UPDATE SET
                    token=excluded.token,
                    sign=excluded.sign,
                    expires_at=excluded.expires_at,
                    generated_at=excluded.generated_at,
                    updated_at=excluded.updated_at
                """,
                (
                    ticket.cuit,
                    ticket.token,
                    ticket.sign,
                    to_iso(ticket.expires_at),
                    to_iso(ticket.generated_at),
                    to_iso(self.now_fn()),
                ),
            )

    def delete(self, cuit: str) -> bool:
        with self.db.connect() as con:
            cur = con.execute("DELETE FROM afip_tickets WHERE cuit=?", (cuit,))
        return bool(cur.rowcount)

    def list_all(self) -> List[AuthTicket]:
        with self.db.connect() as con:
            rows = con.execute("SELECT * FROM afip_tickets ORDER BY cuit").fetchall()
        return [self._row_to_ticket(row) for row in rows]

    def claim_renewal(self, cuit: str, owner: str, lease_until: datetime) -> bool:
        """Reserva el loginCms del CUIT; False si otro dueño tiene una reserva vigente"""
        with self.db.connect(immediate=True) as con:
            row = con.execute(
                "SELECT owner, lease_until FROM afip_ticket_leases WHERE cuit=?", (cuit,)
            ).fetchone()
            if row and row["owner"] != owner and from_iso(row["lease_until"]) > self.now_fn():
                return False
            con.execute(
                """
                INSERT INTO afip_ticket_leases (cuit, owner, lease_until) VALUES (?, ?, ?)
                ON CONFLICT(cuit) DO UPDATE SET owner=excluded.owner, lease_until=excluded.lease_until
                """,
                (cuit, owner, to_iso(lease_until)),
            )
        return True

    def release_renewal(self, cuit: str, owner: str) -> None:
        with self.db.connect() as con:
            con.execute("DELETE FROM afip_ticket_leases WHERE cuit=? AND owner=?", (cuit, owner))

    def renewal_owner(self, cuit: str) -> Optional[str]:
        with self.db.connect() as con:
            row = con.execute("SELECT owner FROM afip_ticket_leases WHERE cuit=?", (cuit,)).fetchone()
        return row["owner"] if row else None


class _Flight:
    """Login en curso para un CUIT; los que esperan leen result/error al terminar"""

    def __init__(self):
        self.done = threading.Event()
        self.result: Optional[AuthTicket] = None
        self.error: Optional[BaseException] = None


class TicketManager:
    """
    Entrega tickets vigentes. Si el guardado está por vencer, un solo hilo por CUIT
    hace loginCms y el resto espera su resultado (éxito o la misma excepción).
    Entre procesos (web, cron) manda la reserva en SQLite: sólo su dueño hace login.
    Los fallos no se cachean: la siguiente llamada arranca un login nuevo.
    """

    def __init__(
        self,
        store: TicketStore,
        wire_client: FiscalWireClient,
        config: AfipConfig,
        credentials_loader: Callable[[str], SigningMaterial] = load_signing_material_for_cuit,
        identity_check: Optional[Callable[[Optional[str], str], Any]] = None,
        now_fn=utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.wire_client = wire_client
        self.config = config
        self.credentials_loader = credentials_loader
        self.identity_check = identity_check
        self.now_fn = now_fn
        self.sleep = sleep
        # Dueño de las reservas de renovación de este manager
        self.owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self.safety_margin = timedelta(seconds=config.ticket_safety_margin)
        self._lock = threading.Lock()
        self._flights: Dict[str, _Flight] = {}
        self._checked_sources: Set[str] = set()

    def get_ticket(self, cuit: str) -> AuthTicket:
        """
        Ticket vigente para el CUIT (con al menos el margen de seguridad de vida).

        Raises:
            AuthRejected: WSAA rechazó el certificado/CMS
            AuthUnavailable: WSAA no disponible, o credenciales no configuradas
        """
        return self._acquire(cuit, self.safety_margin)

    def _acquire(self, cuit: str, margin: timedelta) -> AuthTicket:
        stored = self.store.load(cuit)
        if stored and stored.is_usable(self.now_fn(), margin):
            return stored

        with self._lock:
            flight = self._flights.get(cuit)
            leader = flight is None
            if leader:
                flight = _Flight()
                self._flights[cuit] = flight

        if not leader:
            logger.debug(f"CUIT {cuit}: esperando login en curso")
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.result

        try:
            flight.result = self._renew_under_lease(cuit, margin)
            return flight.result
        except BaseException as e:
            flight.error = e
            raise
        finally:
            with self._lock:
                self._flights.pop(cuit, None)
            flight.done.set()

    def _renew_under_lease(self, cuit: str, margin: timedelta) -> AuthTicket:
        """
        Login entre procesos: quien toma la reserva en afip_ticket_leases hace loginCms,
        el resto relee el ticket guardado hasta que aparece o la reserva vence.
        """
        deadline = time.monotonic() + self.config.ticket_lease_sec
        waiting = False
        while True:
            # Otro líder pudo haber terminado entre la lectura y tomar el vuelo
            stored = self.store.load(cuit)
            if stored and stored.is_usable(self.now_fn(), margin):
                return stored

            lease_until = self.now_fn() + timedelta(seconds=self.config.ticket_lease_sec)
            if self.store.claim_renewal(cuit, self.owner, lease_until):
                try:
                    return self._login(cuit)
                finally:
                    self.store.release_renewal(cuit, self.owner)

            if not waiting:
                logger.info(f"CUIT {cuit}: otro proceso está renovando el ticket, esperando")
                waiting = True
            if time.monotonic() >= deadline:
                raise AuthUnavailable(
                    f"CUIT {cuit}: la renovación del ticket en otro proceso no terminó a tiempo",
                    "RENEWAL_IN_PROGRESS",
                )
            self.sleep(self.config.ticket_lease_poll_sec)

    def _login(self, cuit: str) -> AuthTicket:
        material = self.credentials_loader(cuit)
        if self.identity_check is not None and material.source not in self._checked_sources:
            self._checked_sources.add(material.source)
            self.identity_check(material.subject_cuit, material.source)

        tra = build_login_ticket_request(self.config.SERVICE, now=self.now_fn(), ttl_seconds=self.config.ticket_ttl)
        signed_cms = sign_login_ticket_request(tra, material)
        try:
            ticket = self.wire_client.login(cuit, signed_cms)
        except AfipException as e:
            logger.warning(f"CUIT {cuit}: login WSAA falló ({type(e).__name__}: {e.message})")
            raise
        self.store.save(ticket)
        logger.info(f"CUIT {cuit}: ticket renovado, vence {to_iso(ticket.expires_at)}")
        return ticket

    def invalidate(self, cuit: str) -> None:
        """Descarta el ticket guardado (AFIP lo rechazó a mitad de una llamada)"""
        if self.store.delete(cuit):
            logger.info(f"CUIT {cuit}: ticket invalidado")

    def renew_expiring(self, cuits: Iterable[str], within: Optional[timedelta] = None) -> List[Dict[str, Any]]:
        """
        Renueva por adelantado los tickets que vencen dentro de `within`.

        No lanza por CUIT: cada resultado es renewed / valid / error.
        """
        within = max(within or self.safety_margin, self.safety_margin)
        results = []
        for cuit in sorted(set(cuits)):
            before = self.store.load(cuit)
            if before and before.is_usable(self.now_fn(), within):
                results.append({
                    "cuit": cuit,
                    "status": "valid",
                    "expires_at": to_iso(before.expires_at),
                })
                continue
            try:
                ticket = self._acquire(cuit, within)
            except AfipException as e:
                logger.error(f"CUIT {cuit}: no se pudo renovar ticket: {e.message}")
                results.append({
                    "cuit": cuit,
                    "status": "error",
                    "error": e.message,
                    "error_type": type(e).__name__,
                })
                continue
            results.append({
                "cuit": cuit,
                "status": "renewed",
                "expires_at": to_iso(ticket.expires_at),
            })
        return results

    def status(self) -> List[Dict[str, Any]]:
        now = self.now_fn()
        items = []
        for ticket in self.store.list_all():
            remaining = ticket.expires_at - now
            items.append({
                "cuit": ticket.cuit,
                "expires_at": to_iso(ticket.expires_at),
                "generated_at": to_iso(ticket.generated_at),
                "valid": ticket.is_usable(now, self.safety_margin),
                "minutes_to_expiry": int(remaining.total_seconds() // 60),
                "renewing_by": self.store.renewal_owner(ticket.cuit),
            })
        return items
