"""
Barrido de reintentos: reclama processing colgados y reprocesa pending / error reintentables
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List

from app.afip_client.config import AfipConfig

from .config_registry import ConfigRegistry
from .db import utcnow
from .errors import InvoiceBusy, InvoiceStateError
from .models import STATE_COMPLETED
from .workflow import InvoiceWorkflow

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    reclaimed: int = 0
    needs_attention: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RetryCoordinator:
    """Pensado para correr periódicamente (cron / endpoint de jobs)"""

    def __init__(
        self,
        workflow: InvoiceWorkflow,
        registry: ConfigRegistry,
        config: AfipConfig,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.workflow = workflow
        self.registry = registry
        self.config = config
        self.now_fn = now_fn

    def sweep(self) -> SweepResult:
        """
        Un barrido completo.

        Raises:
            ConfigurationError: Un comprobante elegido pertenece a una sucursal sin
                configuración activa; el barrido se corta y el comprobante no se toca
        """
        result = SweepResult()

        stale_before = self.now_fn() - timedelta(seconds=self.config.stale_after_sec)
        for invoice_id in self.workflow.find_stale(stale_before):
            if self.workflow.reclaim_stale(invoice_id, stale_before):
                result.reclaimed += 1

        candidates = self.workflow.retry_candidates(self.config.max_attempts, self.config.sweep_batch)
        logger.info(f"Barrido: {len(candidates)} comprobantes a procesar ({result.reclaimed} reclamados)")

        for record in candidates:
            self.registry.active_config(record.branch_id)
            try:
                processed = self.workflow.process_invoice(record.id, trigger="sweep")
            except (InvoiceBusy, InvoiceStateError) as e:
                logger.info(f"Barrido: comprobante {record.id} omitido ({e.message})")
                result.skipped += 1
                continue
            except Exception:
                logger.exception(f"Barrido: comprobante {record.id} falló con error inesperado")
                result.processed += 1
                result.failed += 1
                continue

            result.processed += 1
            if processed.state == STATE_COMPLETED:
                result.succeeded += 1
            else:
                result.failed += 1

        result.needs_attention = self.workflow.needs_attention(self.config.max_attempts)
        logger.info(
            f"Barrido terminado: procesados={result.processed} ok={result.succeeded} "
            f"fallidos={result.failed} omitidos={result.skipped} "
            f"requieren atención={len(result.needs_attention)}"
        )
        return result
