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
from app.afip_client.exceptions import ConfigurationError
from facturador.db import Database
from facturador.service import FacturacionService


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Barrido de reintentos de comprobantes AFIP (para cron)")
    ap.add_argument("--env", choices=["test", "prod"], default=None, help="Ambiente AFIP (default AFIP_ENV)")
    ap.add_argument("--db", default=None, help="Ruta SQLite (default FACTURADOR_DB)")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    service = FacturacionService(config=get_afip_config(args.env), db=Database(args.db))
    try:
        result = service.run_retry_sweep()
    except ConfigurationError as exc:
        print(json.dumps({"ok": False, "error": exc.message, "code": exc.code}, ensure_ascii=False))
        return 2
    finally:
        service.close()

    print(json.dumps({"ok": True, "result": result.to_dict()}, ensure_ascii=False, indent=2))
    # 1 si hay comprobantes que requieren operador, para que el cron lo note
    return 1 if result.needs_attention else 0


if __name__ == "__main__":
    raise SystemExit(main())
