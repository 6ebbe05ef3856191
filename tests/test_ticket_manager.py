from datetime import timedelta
from pathlib import Path
import sys
import threading
import time

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from _afip_fakes import ISSUER_CUIT, OTHER_CUIT, FakeClock, FakeWireClient, make_config, signing_material
from app.afip_client.exceptions import AuthRejected, AuthUnavailable, CredentialsNotConfigured
from app.afip_client.models import AuthTicket
from facturador.db import Database
from facturador.tickets import TicketManager, TicketStore


def _manager(tmp_path, wire=None, clock=None, loader=None):
    clock = clock or FakeClock()
    wire = wire or FakeWireClient(clock)
    db = Database(str(tmp_path / "tickets.db"))
    db.init_schema()
    store = TicketStore(db, now_fn=clock)
    manager = TicketManager(
        store,
        wire,
        make_config(),
        credentials_loader=loader or (lambda cuit: signing_material(cuit)),
        now_fn=clock,
    )
    return manager, store, wire, clock


def test_fresh_stored_ticket_needs_no_login(tmp_path):
    manager, store, wire, clock = _manager(tmp_path)
    store.save(AuthTicket(ISSUER_CUIT, "t", "s", clock() + timedelta(hours=2)))

    ticket = manager.get_ticket(ISSUER_CUIT)

    assert ticket.token == "t"
    assert wire.login_calls == []


def test_ticket_inside_safety_margin_is_renewed(tmp_path):
    manager, store, wire, clock = _manager(tmp_path)
    store.save(AuthTicket(ISSUER_CUIT, "viejo", "s", clock() + timedelta(minutes=5)))

    ticket = manager.get_ticket(ISSUER_CUIT)

    assert ticket.token == "token-1"
    assert wire.login_calls == [ISSUER_CUIT]
    assert store.load(ISSUER_CUIT).token == "token-1"


def test_concurrent_callers_share_a_single_login(tmp_path):
    manager, _store, wire, _clock = _manager(tmp_path)
    wire.login_gate = threading.Event()
    results = []

    def worker():
        results.append(manager.get_ticket(ISSUER_CUIT))

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for t in threads:
        t.start()
    assert wire.login_started.wait(timeout=5)
    time.sleep(0.3)
    wire.login_gate.set()
    for t in threads:
        t.join(timeout=5)

    assert len(wire.login_calls) == 1
    assert len(results) == 5
    assert {r.token for r in results} == {"token-1"}


def test_failed_login_propagates_same_error_and_is_not_cached(tmp_path):
    manager, store, wire, _clock = _manager(tmp_path)
    wire.login_gate = threading.Event()
    failure = AuthUnavailable("WSAA caído", "HTTP_503")
    wire.login_errors.append(failure)
    errors = []

    def worker():
        try:
            manager.get_ticket(ISSUER_CUIT)
        except AuthUnavailable as e:
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    assert wire.login_started.wait(timeout=5)
    time.sleep(0.3)
    wire.login_gate.set()
    for t in threads:
        t.join(timeout=5)

    assert len(wire.login_calls) == 1
    assert len(errors) == 4
    assert all(e is failure for e in errors)
    assert store.load(ISSUER_CUIT) is None

    # El siguiente llamado arranca un login nuevo
    ticket = manager.get_ticket(ISSUER_CUIT)
    assert ticket.token == "token-2"
    assert len(wire.login_calls) == 2


def test_rejected_login_is_auth_rejected(tmp_path):
    manager, _store, wire, _clock = _manager(tmp_path)
    wire.login_errors.append(AuthRejected("cms.cert.untrusted", "cms.cert.untrusted"))

    with pytest.raises(AuthRejected):
        manager.get_ticket(ISSUER_CUIT)


def test_missing_credentials_surface_as_auth_unavailable(tmp_path):
    def loader(cuit):
        raise CredentialsNotConfigured(cuit)

    manager, _store, wire, _clock = _manager(tmp_path, loader=loader)

    with pytest.raises(AuthUnavailable):
        manager.get_ticket(ISSUER_CUIT)
    assert wire.login_calls == []


def test_invalidate_forces_new_login(tmp_path):
    manager, _store, wire, _clock = _manager(tmp_path)
    manager.get_ticket(ISSUER_CUIT)

    manager.invalidate(ISSUER_CUIT)
    ticket = manager.get_ticket(ISSUER_CUIT)

    assert ticket.token == "token-2"


def test_renew_expiring_reports_per_cuit(tmp_path):
    manager, store, wire, clock = _manager(tmp_path)
    store.save(AuthTicket(ISSUER_CUIT, "largo", "s", clock() + timedelta(hours=10)))
    store.save(AuthTicket(OTHER_CUIT, "corto", "s", clock() + timedelta(minutes=30)))

    results = {r["cuit"]: r for r in manager.renew_expiring([ISSUER_CUIT, OTHER_CUIT], within=timedelta(hours=1))}

    assert results[ISSUER_CUIT]["status"] == "valid"
    assert results[OTHER_CUIT]["status"] == "renewed"
    assert wire.login_calls == [OTHER_CUIT]


def test_renew_expiring_never_raises(tmp_path):
    manager, _store, wire, _clock = _manager(tmp_path)
    wire.login_errors.append(AuthRejected("cms.cert.expired", "cms.cert.expired"))

    results = manager.renew_expiring([ISSUER_CUIT])

    assert results[0]["status"] == "error"
    assert results[0]["error_type"] == "AuthRejected"


def test_status_lists_minutes_to_expiry(tmp_path):
    manager, store, _wire, clock = _manager(tmp_path)
    store.save(AuthTicket(ISSUER_CUIT, "t", "s", clock() + timedelta(minutes=90)))
    store.save(AuthTicket(OTHER_CUIT, "t", "s", clock() + timedelta(minutes=5)))

    status = {s["cuit"]: s for s in manager.status()}

    assert status[ISSUER_CUIT]["valid"] is True
    assert status[ISSUER_CUIT]["minutes_to_expiry"] == 90
    assert status[OTHER_CUIT]["valid"] is False
    assert status[ISSUER_CUIT]["renewing_by"] is None


def test_two_processes_share_a_single_login(tmp_path):
    clock = FakeClock()
    wire = FakeWireClient(clock)
    wire.login_gate = threading.Event()
    # Dos managers sobre el mismo archivo: el proceso web y el cron
    web, store, _wire, _clock = _manager(tmp_path, wire=wire, clock=clock)
    cron, _store, _wire, _clock = _manager(tmp_path, wire=wire, clock=clock)
    results = {}

    def worker(name, manager):
        results[name] = manager.get_ticket(ISSUER_CUIT)

    first = threading.Thread(target=worker, args=("web", web))
    first.start()
    assert wire.login_started.wait(timeout=5)
    second = threading.Thread(target=worker, args=("cron", cron))
    second.start()
    time.sleep(0.3)
    assert store.renewal_owner(ISSUER_CUIT) == web.owner
    wire.login_gate.set()
    first.join(timeout=5)
    second.join(timeout=5)

    assert wire.login_calls == [ISSUER_CUIT]
    assert results["web"].token == "token-1"
    assert results["cron"].token == "token-1"
    assert store.renewal_owner(ISSUER_CUIT) is None


def test_waits_for_renewal_running_elsewhere(tmp_path):
    manager, store, wire, clock = _manager(tmp_path)
    store.claim_renewal(ISSUER_CUIT, "cron:1:abc", clock() + timedelta(minutes=1))
    naps = []

    def other_process_finishes(seconds):
        naps.append(seconds)
        store.save(AuthTicket(ISSUER_CUIT, "del-cron", "s", clock() + timedelta(hours=12)))
        store.release_renewal(ISSUER_CUIT, "cron:1:abc")

    manager.sleep = other_process_finishes

    ticket = manager.get_ticket(ISSUER_CUIT)

    assert ticket.token == "del-cron"
    assert wire.login_calls == []
    assert naps == [manager.config.ticket_lease_poll_sec]


def test_expired_renewal_lease_is_taken_over(tmp_path):
    manager, store, wire, clock = _manager(tmp_path)
    store.claim_renewal(ISSUER_CUIT, "caido:1:abc", clock() - timedelta(seconds=1))

    ticket = manager.get_ticket(ISSUER_CUIT)

    assert ticket.token == "token-1"
    assert wire.login_calls == [ISSUER_CUIT]
    assert store.renewal_owner(ISSUER_CUIT) is None


def test_renewal_elsewhere_that_never_finishes_is_auth_unavailable(tmp_path, monkeypatch):
    manager, store, wire, clock = _manager(tmp_path)
    store.claim_renewal(ISSUER_CUIT, "cron:1:abc", clock() + timedelta(minutes=5))
    manager.sleep = lambda _s: None
    ticks = [0.0]

    def monotonic():
        ticks[0] += 1000.0
        return ticks[0]

    monkeypatch.setattr("facturador.tickets.time.monotonic", monotonic)

    with pytest.raises(AuthUnavailable) as excinfo:
        manager.get_ticket(ISSUER_CUIT)
    assert excinfo.value.code == "RENEWAL_IN_PROGRESS"
    assert wire.login_calls == []
    assert store.renewal_owner(ISSUER_CUIT) == "cron:1:abc"
