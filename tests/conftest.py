"""
Shared pytest fixtures for the FieldOps workflow test suite.

Provides:
    - app: Flask application on a FrozenClock (session-scoped)
    - frozen_clock: the app's clock, reset to DEFAULT_NOW before every test
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - acme / installation / contract: a client with one installation and a quota-5 contract
    - admin / supervisor / technician: operators with the matching roles
    - make_intervention: factory for interventions in an arbitrary state
"""

from datetime import date, datetime, timezone

import pytest

from fieldops import create_app
from fieldops.models import db as _db
from fieldops.models.client import Client, Contract, Installation
from fieldops.models.enums import InterventionState, InvoiceOutcome, OperatorRole
from fieldops.models.intervention import Intervention
from fieldops.models.operator import Operator
from fieldops.services.clock import FrozenClock

# Monday 19 Oct 2026, 10:00 in Europe/Rome (CEST)
DEFAULT_NOW = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)

_clock = FrozenClock(DEFAULT_NOW)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing", clock=_clock)


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    _clock.set(DEFAULT_NOW)
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def frozen_clock():
    return _clock


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Domain fixtures ──────────────────────────────────────────────────────


def _create_operator(*, name, role, email=None, **kwargs) -> Operator:
    op = Operator(name=name, role=role, email=email, **kwargs)
    _db.session.add(op)
    _db.session.commit()
    return op


@pytest.fixture()
def make_operator():
    """Factory: make_operator(name=..., role=OperatorRole.X, email=..., **columns)."""
    return _create_operator


@pytest.fixture()
def acme():
    c = Client(name="ACME Retail")
    _db.session.add(c)
    _db.session.commit()
    return c


@pytest.fixture()
def installation(acme):
    inst = Installation(
        client_id=acme.id, name="Milan Store", planned_date=date(2026, 11, 2),
        proforma="PF-001", warehouse_code="WH-MI",
    )
    _db.session.add(inst)
    _db.session.commit()
    return inst


@pytest.fixture()
def contract(acme):
    c = Contract(client_id=acme.id, plan_code="GOLD", included_quota=5, unlimited=False)
    _db.session.add(c)
    _db.session.commit()
    return c


@pytest.fixture()
def admin():
    return _create_operator(name="Anna Admin", role=OperatorRole.ADMINISTRATION,
                           email="anna.admin@example.com")


@pytest.fixture()
def supervisor():
    return _create_operator(name="Sergio Supervisor", role=OperatorRole.SUPERVISOR,
                           email="sergio@example.com")


@pytest.fixture()
def technician():
    return _create_operator(name="Tina Tech", role=OperatorRole.TECHNICIAN,
                           email="tina@example.com")


@pytest.fixture()
def make_intervention(contract, installation):
    """Insert an intervention directly, bypassing quota classification."""

    def _make(*, state=InterventionState.OPEN, outcome=None, included=False,
              performed_on=date(2026, 10, 15), description="Replaced media player",
              invoice_number=None, target_installation=None, target_contract=None):
        if state == InterventionState.CLOSED and outcome is None:
            outcome = InvoiceOutcome.TO_INVOICE
        iv = Intervention(
            contract_id=(target_contract or contract).id,
            installation_id=(target_installation or installation).id,
            performed_on=performed_on,
            description=description,
            included=included,
            state=state,
            outcome=outcome,
            invoice_number=invoice_number,
            closed_at=DEFAULT_NOW if state == InterventionState.CLOSED else None,
        )
        _db.session.add(iv)
        _db.session.commit()
        return iv

    return _make
