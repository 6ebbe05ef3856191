#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

# Asegurar import "app.*" / "facturador.*" aunque ejecutes desde tools/
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.afip_client.config import get_afip_config
from app.afip_client.exceptions import AfipUnavailable
from facturador.db import Database
from facturador.service import FacturacionService


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Diagnóstico AFIP: tickets, sucursales vs certificados, FEDummy")
    ap.add_argument("--env", choices=["test", "prod"], default=None, help="Ambiente AFIP (default AFIP_ENV)")
    ap.add_argument("--db", default=None, help="Ruta SQLite (default FACTURADOR_DB)")
    ap.add_argument("--server", action="store_true", help="Consultar también FEDummy (requiere red)")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    service = FacturacionService(config=get_afip_config(args.env), db=Database(args.db))
    out = {
        "env": service.config.env,
        "tickets": service.ticket_status(),
        "branches": service.branch_consistency(),
    }
    ok = all(item["match"] for item in out["branches"])
    if args.server:
        try:
            out["server"] = service.server_status()
            ok = ok and all(
                (out["server"].get(key) or "").upper() == "OK" for key in ("app_server", "db_server", "auth_server")
            )
        except AfipUnavailable as exc:
            out["server"] = {"error": exc.message}
            ok = False
    service.close()

    out["ok"] = ok
    print(json.dumps(out, ensure_ascii=False, indent=2))
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
