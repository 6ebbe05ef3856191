import hmac
import logging
import os
import sys
import threading
import time
from decimal import InvalidOperation
from pathlib import Path
from typing import Optional

from flask import Flask, jsonify, request

# Asegurar imports desde repo root (evitar conflicto con webui/app.py)
SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) in sys.path:
    sys.path.remove(str(SCRIPT_DIR))
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.afip_client.exceptions import AfipException, BusinessRejected, ConfigurationError
from app.afip_client.models import Sale
from facturador.errors import InvoiceBusy, InvoiceNotFound, InvoiceStateError
from facturador.service import FacturacionService

APP_TITLE = "Facturador AFIP"

logger = logging.getLogger(__name__)

app = Flask(__name__)

_SERVICE: Optional[FacturacionService] = None
_SERVICE_LOCK = threading.Lock()
_SWEEP_THREAD_STARTED = False


def get_service() -> FacturacionService:
    global _SERVICE
    with _SERVICE_LOCK:
        if _SERVICE is None:
            _SERVICE = FacturacionService()
        return _SERVICE


def set_service(service: Optional[FacturacionService]) -> None:
    """Reemplaza el servicio (tests / embebido en otra app)"""
    global _SERVICE
    with _SERVICE_LOCK:
        _SERVICE = service


# -------------------------
# Errores -> HTTP
# -------------------------
@app.errorhandler(InvoiceNotFound)
def _invoice_not_found(exc):
    return jsonify({"ok": False, "error": exc.message, "code": exc.code}), 404


@app.errorhandler(InvoiceStateError)
@app.errorhandler(InvoiceBusy)
def _invoice_conflict(exc):
    return jsonify({"ok": False, "error": exc.message, "code": exc.code}), 409


@app.errorhandler(ConfigurationError)
def _configuration_error(exc):
    return jsonify({"ok": False, "error": exc.message, "code": exc.code or "CONFIGURATION"}), 409


@app.errorhandler(BusinessRejected)
def _business_rejected(exc):
    return jsonify({
        "ok": False,
        "error": exc.message,
        "code": exc.code,
        "reasons": [{"code": c, "message": m} for c, m in exc.reasons],
    }), 400


@app.errorhandler(AfipException)
def _afip_error(exc):
    return jsonify({"ok": False, "error": exc.message, "code": exc.code}), 502


def _bad_request(message: str):
    return jsonify({"ok": False, "error": message}), 400


def _parse_sale(data) -> Sale:
    if not isinstance(data, dict):
        raise ValueError("Se esperaba un objeto JSON con la venta")
    try:
        return Sale.from_dict(data)
    except KeyError as e:
        raise ValueError(f"Falta el campo {e.args[0]}") from e
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Venta inválida: {e}") from e


def _job_token_ok() -> bool:
    expected = (os.getenv("AFIP_JOB_TOKEN") or "").strip()
    if not expected:
        return True
    received = (request.headers.get("X-Job-Token") or "").strip()
    return hmac.compare_digest(received, expected)


def _forbidden():
    return jsonify({"ok": False, "error": "X-Job-Token inválido o ausente"}), 403


def _is_truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "si", "sí")


# -------------------------
# Health
# -------------------------
@app.route("/health")
@app.route("/healthz")
def health():
    return jsonify({"ok": True, "service": APP_TITLE})


# -------------------------
# Comprobantes
# -------------------------
@app.route("/sales/invoice", methods=["POST"])
def create_invoice():
    try:
        sale = _parse_sale(request.get_json(silent=True))
    except ValueError as e:
        return _bad_request(str(e))

    service = get_service()
    record = service.create_invoice_for_sale(sale)
    if _is_truthy(request.args.get("process")) and record.state in ("pending", "error"):
        record = service.process_invoice(record.id, trigger="create")
    status = service.get_invoice_status(record.id)
    return jsonify({"ok": True, "invoice": record.to_dict(), "status": status.to_dict()}), 201


@app.route("/invoices/<int:invoice_id>/process", methods=["POST"])
def process_invoice(invoice_id: int):
    service = get_service()
    record = service.process_invoice(invoice_id, trigger="manual")
    status = service.get_invoice_status(record.id)
    return jsonify({"ok": record.state == "completed", "invoice": record.to_dict(), "status": status.to_dict()})


@app.route("/invoices/<int:invoice_id>", methods=["GET"])
def invoice_status(invoice_id: int):
    status = get_service().get_invoice_status(invoice_id)
    return jsonify({"ok": True, "status": status.to_dict()})


@app.route("/invoices/<int:invoice_id>/sale", methods=["PUT"])
def correct_invoice_sale(invoice_id: int):
    try:
        sale = _parse_sale(request.get_json(silent=True))
    except ValueError as e:
        return _bad_request(str(e))
    record = get_service().correct_sale_data(invoice_id, sale)
    return jsonify({"ok": True, "invoice": record.to_dict()})


# -------------------------
# Configuración fiscal
# -------------------------
@app.route("/branches/<branch_id>/fiscal-config", methods=["PUT"])
def put_fiscal_config(branch_id: str):
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return _bad_request("Se esperaba un objeto JSON")
    if not data.get("cuit") or data.get("punto_venta") in (None, ""):
        return _bad_request("cuit y punto_venta son obligatorios")
    try:
        config = get_service().registry.set_config(
            branch_id,
            cuit=str(data["cuit"]),
            punto_venta=data["punto_venta"],
            iva_condition=str(data.get("iva_condition") or "RI"),
            active=data.get("active", True) is not False,
        )
    except ConfigurationError as e:
        return _bad_request(e.message)
    return jsonify({
        "ok": True,
        "config": {
            "branch_id": config.branch_id,
            "cuit": config.cuit,
            "punto_venta": config.punto_venta,
            "iva_condition": config.iva_condition,
            "active": config.active,
        },
    })


# -------------------------
# Jobs (cron externo)
# -------------------------
@app.route("/jobs/retry-sweep", methods=["POST"])
def job_retry_sweep():
    if not _job_token_ok():
        return _forbidden()
    result = get_service().run_retry_sweep()
    return jsonify({"ok": True, "result": result.to_dict()})


@app.route("/jobs/renew-tickets", methods=["POST"])
def job_renew_tickets():
    if not _job_token_ok():
        return _forbidden()
    within = request.args.get("within_minutes", type=int)
    results = get_service().renew_tickets(within_minutes=within)
    ok = all(item["status"] != "error" for item in results)
    return jsonify({"ok": ok, "results": results})


# -------------------------
# Diagnóstico
# -------------------------
@app.route("/diagnostics/tickets")
def diagnostics_tickets():
    if not _job_token_ok():
        return _forbidden()
    return jsonify({"ok": True, "tickets": get_service().ticket_status()})


@app.route("/diagnostics/branches")
def diagnostics_branches():
    if not _job_token_ok():
        return _forbidden()
    report = get_service().branch_consistency()
    return jsonify({"ok": all(item["match"] for item in report), "branches": report})


@app.route("/diagnostics/server")
def diagnostics_server():
    if not _job_token_ok():
        return _forbidden()
    status = get_service().server_status()
    ok = all((status.get(key) or "").upper() == "OK" for key in ("app_server", "db_server", "auth_server"))
    return jsonify({"ok": ok, "afip": status}), (200 if ok else 503)


# -------------------------
# Barrido en segundo plano (opcional)
# -------------------------
def _start_sweep_scheduler(interval_sec: int) -> None:
    global _SWEEP_THREAD_STARTED
    if _SWEEP_THREAD_STARTED or interval_sec <= 0:
        return
    _SWEEP_THREAD_STARTED = True

    def worker():
        while True:
            try:
                get_service().run_retry_sweep()
            except ConfigurationError as e:
                logger.error(f"Barrido detenido por configuración: {e.message}")
            except Exception:
                logger.exception("Barrido en segundo plano falló")
            time.sleep(interval_sec)

    t = threading.Thread(target=worker, daemon=True)
    t.start()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    get_service()
    _start_sweep_scheduler(int(os.getenv("FACTURADOR_SWEEP_INTERVAL_SEC", "0") or 0))
    try:
        app.run(host="127.0.0.1", port=int(os.getenv("FACTURADOR_PORT", "5055")), debug=False, use_reloader=False)
    except Exception as exc:
        print(f"APP_RUN_ERROR: {exc!r}", file=sys.stderr)
        raise
