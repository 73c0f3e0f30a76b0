"""
Pytest fixtures: temporary SQLite database, fakeredis, fixed clock and a
seeded salon (one tenant, two staff, a paid and a free service).
"""

import json
import os
import tempfile
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

# Keep the module-level engine away from the project tree
os.environ.setdefault(
    "DATABASE_URL", f"sqlite:///{os.path.join(tempfile.gettempdir(), 'salonbook-test.db')}"
)

import fakeredis
import httpx
import pytest
from sqlalchemy.orm import sessionmaker

from salonbook.database import init_db, make_engine
from salonbook.models.tables import (
    CustomerPackages,
    Customers,
    PackageUsages,
    ServicePackages,
    Services,
    Staff,
    Tenants,
    t_staff_services,
)
from salonbook.services.payments import PayTRGateway

MERCHANT_KEY = "test-merchant-key"
MERCHANT_SALT = "test-merchant-salt"

# 2026-03-02 is a Monday; 05:00 UTC is 08:00 in Istanbul
MONDAY = datetime(2026, 3, 2).date()


class Clock:
    """Settable clock injected as now_fn."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def redis():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 2, 5, 0, tzinfo=timezone.utc))


@pytest.fixture
def salon(db):
    tenant = Tenants(slug="ayse-kuafor", name="Ayşe Kuaför", timezone="Europe/Istanbul")
    db.add(tenant)
    db.flush()

    ayse = Staff(tenant_id=tenant.id, display_name="Ayşe")
    mehmet = Staff(
        tenant_id=tenant.id,
        display_name="Mehmet",
        work_schedule=json.dumps({"monday": {"start": "10:00", "end": "14:00", "breaks": []}}),
    )
    haircut = Services(tenant_id=tenant.id, name="Haircut", duration_min=60, price=500.0)
    consult = Services(tenant_id=tenant.id, name="Consultation", duration_min=30, price=0)
    db.add_all([ayse, mehmet, haircut, consult])
    db.flush()

    db.execute(t_staff_services.insert().values(staff_id=ayse.id, service_id=haircut.id))
    db.execute(t_staff_services.insert().values(staff_id=ayse.id, service_id=consult.id))
    db.execute(t_staff_services.insert().values(staff_id=mehmet.id, service_id=consult.id))
    db.commit()

    return SimpleNamespace(
        tenant_id=tenant.id,
        ayse_id=ayse.id,
        mehmet_id=mehmet.id,
        haircut_id=haircut.id,
        consult_id=consult.id,
    )


def add_customer(db, tenant_id, phone, **kwargs) -> int:
    customer = Customers(tenant_id=tenant_id, phone=phone, first_name=kwargs.pop("first_name", "Zeynep"), **kwargs)
    db.add(customer)
    db.commit()
    return customer.id


def add_package(db, tenant_id, customer_id, service_id, quantity, expires_at=None) -> int:
    """Assign a package with one usage line; returns the usage id."""
    package = ServicePackages(tenant_id=tenant_id, name=f"{quantity}x service {service_id}", price=1000)
    db.add(package)
    db.flush()
    customer_package = CustomerPackages(
        tenant_id=tenant_id,
        customer_id=customer_id,
        package_id=package.id,
        expires_at=expires_at,
    )
    db.add(customer_package)
    db.flush()
    usage = PackageUsages(
        customer_package_id=customer_package.id,
        service_id=service_id,
        total_quantity=quantity,
        used_quantity=0,
        remaining_quantity=quantity,
    )
    db.add(usage)
    db.commit()
    return usage.id


@pytest.fixture
def paytr_requests():
    return []


@pytest.fixture
def gateway(paytr_requests):
    """Real PayTR adapter on a mock transport that always issues a token."""

    def handler(request: httpx.Request) -> httpx.Response:
        paytr_requests.append(request)
        return httpx.Response(200, json={"status": "success", "token": "tok123"})

    return PayTRGateway(
        merchant_id="100001",
        merchant_key=MERCHANT_KEY,
        merchant_salt=MERCHANT_SALT,
        test_mode=True,
        api_url="https://paytr.test/odeme/api/get-token",
        iframe_url="https://paytr.test/odeme/guvenli",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


def walk_to_settlement(
    orchestrator,
    salon,
    phone="0532 123 45 67",
    service_id=None,
    staff_id=None,
    slot_time="10:00",
    channel="sms",
    email=None,
):
    """Drive a fresh session to settlement_choice; returns the session id."""
    session = orchestrator.start(salon.tenant_id)
    steps = [
        {"phone": phone},
        {"service_id": service_id or salon.haircut_id},
        {"staff_id": staff_id or salon.ayse_id},
        {"date": MONDAY.isoformat(), "time": slot_time},
        {"name": "Zeynep Kaya", "channel": channel, "phone": phone, "email": email},
    ]
    for step_input in steps:
        result = orchestrator.advance(session.session_id, step_input)
        assert result.error is None, result.error
    assert result.session.step == "settlement_choice"
    return session.session_id
