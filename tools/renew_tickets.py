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
from facturador.db import Database
from facturador.service import FacturacionService


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Renueva tickets WSAA por vencer de los CUIT configurados")
    ap.add_argument("--env", choices=["test", "prod"], default=None, help="Ambiente AFIP (default AFIP_ENV)")
    ap.add_argument("--db", default=None, help="Ruta SQLite (default FACTURADOR_DB)")
    ap.add_argument(
        "--within-minutes",
        type=int,
        default=60,
        help="Renovar los que vencen dentro de esta ventana (default 60)",
    )
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    service = FacturacionService(config=get_afip_config(args.env), db=Database(args.db))
    try:
        results = service.renew_tickets(within_minutes=args.within_minutes)
    finally:
        service.close()

    ok = all(item["status"] != "error" for item in results)
    print(json.dumps({"ok": ok, "results": results}, ensure_ascii=False, indent=2))
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
