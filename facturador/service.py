"""
Fachada del facturador: arma las piezas desde la configuración y expone las operaciones
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from app.afip_client.cert_utils import SigningMaterial, load_signing_material_for_cuit
from app.afip_client.config import AfipConfig, get_afip_config
from app.afip_client.models import Sale
from app.afip_client.wire_client import FiscalWireClient

from .config_registry import ConfigRegistry
from .db import Database, utcnow
from .models import InvoiceRecord, InvoiceStatus
from .retry import RetryCoordinator, SweepResult
from .tickets import TicketManager, TicketStore
from .workflow import InvoiceWorkflow

logger = logging.getLogger(__name__)


class FacturacionService:
    def __init__(
        self,
        config: Optional[AfipConfig] = None,
        db: Optional[Database] = None,
        wire_client: Optional[FiscalWireClient] = None,
        credentials_loader: Callable[[str], SigningMaterial] = load_signing_material_for_cuit,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.config = config or get_afip_config()
        self.db = db or Database()
        self.db.init_schema()
        self.wire_client = wire_client or FiscalWireClient(self.config)
        self.credentials_loader = credentials_loader
        self.now_fn = now_fn

        self.registry = ConfigRegistry(self.db, now_fn=now_fn)
        self.ticket_store = TicketStore(self.db, now_fn=now_fn)
        self.tickets = TicketManager(
            self.ticket_store,
            self.wire_client,
            self.config,
            credentials_loader=credentials_loader,
            identity_check=self.registry.check_certificate_identity,
            now_fn=now_fn,
        )
        self.workflow = InvoiceWorkflow(
            self.db, self.registry, self.tickets, self.wire_client, self.config, now_fn=now_fn
        )
        self.retry = RetryCoordinator(self.workflow, self.registry, self.config, now_fn=now_fn)
        logger.info(f"Facturador listo (AFIP {self.config.env}, DB {self.db.path})")

    def create_invoice_for_sale(self, sale: Sale) -> InvoiceRecord:
        return self.workflow.create_invoice_for_sale(sale)

    def process_invoice(self, invoice_id: int, trigger: str = "manual") -> InvoiceRecord:
        return self.workflow.process_invoice(invoice_id, trigger=trigger)

    def get_invoice_status(self, invoice_id: int) -> InvoiceStatus:
        return self.workflow.get_invoice_status(invoice_id)

    def correct_sale_data(self, invoice_id: int, sale: Sale) -> InvoiceRecord:
        return self.workflow.correct_sale_data(invoice_id, sale)

    def run_retry_sweep(self) -> SweepResult:
        return self.retry.sweep()

    def renew_tickets(self, within_minutes: Optional[int] = None) -> List[Dict[str, Any]]:
        """Renueva tickets de todos los CUIT activos (y los ya guardados)"""
        cuits = set(self.registry.active_cuits())
        cuits.update(t.cuit for t in self.ticket_store.list_all())
        within = timedelta(minutes=within_minutes) if within_minutes else None
        return self.tickets.renew_expiring(cuits, within=within)

    def ticket_status(self) -> List[Dict[str, Any]]:
        return self.tickets.status()

    def branch_consistency(self) -> List[Dict[str, Any]]:
        return self.registry.consistency_report(loader=self.credentials_loader)

    def server_status(self) -> Dict[str, str]:
        return self.wire_client.server_status()

    def close(self) -> None:
        self.wire_client.close()
