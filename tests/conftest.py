"""Shared fixtures: a fresh in-memory database per test, seeded users and products."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Tuple

import pytest

from application import (
    AbstractEventPublisher,
    AbstractFileStore,
    CreateProjectCommand,
    CreateProjectUseCase,
    CreateTaskCommand,
    CreateTaskUseCase,
)
from infrastructure import InMemoryDatabase, InMemoryUnitOfWork
from model import Principal, Product, ProjectProduct, Role, User


class RecordingPublisher(AbstractEventPublisher):
    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def publish(self, topic, payload):
        self.events.append((topic, payload))

    def for_user(self, user_id) -> List[Dict[str, Any]]:
        return [p["notification"] for _, p in self.events if p["userId"] == str(user_id)]


class FailingPublisher(AbstractEventPublisher):
    def publish(self, topic, payload):
        raise RuntimeError("broker down")


class RecordingFileStore(AbstractFileStore):
    """Knows a fixed set of urls; deleting anything else raises FileNotFoundError."""

    def __init__(self, existing=()):
        self.existing = set(existing)
        self.deleted: List[str] = []

    def delete(self, url):
        if url not in self.existing:
            raise FileNotFoundError(url)
        self.existing.remove(url)
        self.deleted.append(url)


@dataclass
class Cast:
    admin: Principal
    pm: Principal
    other_pm: Principal
    stock: Principal
    client: Principal
    tech: Principal
    other_tech: Principal


@pytest.fixture
def db() -> InMemoryDatabase:
    return InMemoryDatabase()


@pytest.fixture
def uow_factory(db):
    return lambda: InMemoryUnitOfWork(db)


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def cast(db) -> Cast:
    people = {
        "admin": ("Ada Admin", Role.ADMIN),
        "pm": ("Paula Manager", Role.PROJECT_MANAGER),
        "other_pm": ("Otto Manager", Role.PROJECT_MANAGER),
        "stock": ("Sam Stock", Role.STOCK_MANAGER),
        "client": ("Cleo Client", Role.CLIENT),
        "tech": ("Theo Tech", Role.TECHNICIAN),
        "other_tech": ("Tina Tech", Role.TECHNICIAN),
    }
    principals = {}
    for key, (name, role) in people.items():
        user = User(name=name, email=f"{key}@example.com", role=role)
        db.users.put(user)
        principals[key] = Principal(id=user.id, role=role)
    return Cast(**principals)


def add_product(db, name="Cable", reference=None, quantity=10, price=5.0) -> uuid.UUID:
    product = Product(name=name, reference=reference or f"REF-{uuid.uuid4().hex[:6]}", quantity=quantity, price=price)
    db.products.put(product)
    return product.id


@pytest.fixture
def cable(db) -> uuid.UUID:
    return add_product(db, name="Cable", reference="CAB-01", quantity=10)


@pytest.fixture
def router(db) -> uuid.UUID:
    return add_product(db, name="Router", reference="RTR-01", quantity=3)


def make_project(uow_factory, cast, products=(), publisher=None, stock=True, **overrides):
    fields = dict(
        name="Fibre roll-out",
        company="Acme",
        description="Street cabinets",
        begin_date=date(2026, 1, 1),
        end_date=date(2026, 12, 31),
        client_id=cast.client.id,
        project_manager_id=cast.pm.id,
        stock_manager_id=cast.stock.id if stock else None,
        products=[ProjectProduct(product_id=pid, quantity=qty) for pid, qty in products],
        actor=cast.admin,
    )
    fields.update(overrides)
    return CreateProjectUseCase(publisher).execute(CreateProjectCommand(**fields), uow_factory())


def make_task(uow_factory, cast, project_id, assigned_to=None, publisher=None, **overrides):
    fields = dict(
        project_id=uuid.UUID(str(project_id)),
        name="Install cabinet",
        description="Mount and wire the street cabinet",
        begin_date=date(2026, 2, 1),
        end_date=date(2026, 2, 10),
        assigned_to=assigned_to,
        actor=cast.pm,
    )
    fields.update(overrides)
    return CreateTaskUseCase(publisher).execute(CreateTaskCommand(**fields), uow_factory())


def stock_of(db, product_id) -> Product:
    return db.products.fetch(product_id)


def allocated(db, product_id, project_id) -> int:
    entry = stock_of(db, product_id).allocation_for(uuid.UUID(str(project_id)))
    return entry.allocated_quantity if entry else 0
