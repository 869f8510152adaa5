"""Product catalogue and user directory use cases."""

from __future__ import annotations

import uuid

import pytest

from application import (
    AuthorizationError,
    ConflictError,
    CreateProductCommand,
    CreateProductUseCase,
    DeleteProductUseCase,
    EnsureAdminUseCase,
    GetUserUseCase,
    ListProductsUseCase,
    ListUsersUseCase,
    RegisterUserCommand,
    RegisterUserUseCase,
    UpdateProductCommand,
    UpdateProductUseCase,
    ValidationError,
)
from conftest import allocated, make_project, stock_of
from model import Role


def _create_product(uow_factory, actor, reference="SPL-01", quantity=4):
    cmd = CreateProductCommand(
        name="Splitter", reference=reference, category="optics", quantity=quantity, price=12.5, actor=actor
    )
    return CreateProductUseCase().execute(cmd, uow_factory())


class TestProducts:
    def test_stock_manager_creates_product(self, uow_factory, cast):
        dto = _create_product(uow_factory, cast.stock)
        assert (dto.reference, dto.quantity, dto.allocations) == ("SPL-01", 4, [])

    def test_duplicate_reference(self, uow_factory, cast):
        _create_product(uow_factory, cast.stock)
        with pytest.raises(ConflictError):
            _create_product(uow_factory, cast.admin)

    def test_negative_quantity(self, uow_factory, cast):
        with pytest.raises(ValidationError):
            _create_product(uow_factory, cast.stock, quantity=-1)

    def test_project_manager_cannot_create(self, uow_factory, cast):
        with pytest.raises(AuthorizationError):
            _create_product(uow_factory, cast.pm)

    def test_restock_keeps_allocations(self, db, uow_factory, cast, cable):
        project = make_project(uow_factory, cast, products=[(cable, 4)])
        cmd = UpdateProductCommand(product_id=cable, actor=cast.stock, quantity=20, price=6.0)
        dto = UpdateProductUseCase().execute(cmd, uow_factory())

        assert dto.quantity == 20
        assert dto.allocated_total == 4
        assert allocated(db, cable, project.id) == 4

    def test_reserved_product_cannot_be_deleted(self, db, uow_factory, cast, cable):
        make_project(uow_factory, cast, products=[(cable, 1)])
        with pytest.raises(ConflictError, match="still reserved"):
            DeleteProductUseCase().execute(cable, cast.stock, uow_factory())
        assert stock_of(db, cable) is not None

    def test_delete_free_product(self, db, uow_factory, cast, cable):
        DeleteProductUseCase().execute(cable, cast.stock, uow_factory())
        assert stock_of(db, cable) is None

    def test_list_filters_by_category(self, uow_factory, cast, cable):
        _create_product(uow_factory, cast.stock)
        names = [p.name for p in ListProductsUseCase().execute(cast.pm, uow_factory(), category="optics")]
        assert names == ["Splitter"]


class TestUsers:
    def test_admin_registers_user(self, uow_factory, cast):
        cmd = RegisterUserCommand(name="New Tech", email="New.Tech@Example.com", role=Role.TECHNICIAN, actor=cast.admin)
        dto = RegisterUserUseCase().execute(cmd, uow_factory())
        assert dto.email == "new.tech@example.com"

    def test_duplicate_email(self, uow_factory, cast):
        cmd = RegisterUserCommand(name="Copy", email="TECH@example.com", role=Role.TECHNICIAN, actor=cast.admin)
        with pytest.raises(ConflictError):
            RegisterUserUseCase().execute(cmd, uow_factory())

    def test_only_admin_registers(self, uow_factory, cast):
        cmd = RegisterUserCommand(name="X", email="x@example.com", role=Role.CLIENT, actor=cast.pm)
        with pytest.raises(AuthorizationError):
            RegisterUserUseCase().execute(cmd, uow_factory())

    def test_everyone_sees_themselves(self, uow_factory, cast):
        assert GetUserUseCase().execute(cast.tech.id, cast.tech, uow_factory()).role == "technician"
        with pytest.raises(AuthorizationError):
            GetUserUseCase().execute(cast.pm.id, cast.tech, uow_factory())

    def test_list_by_role(self, uow_factory, cast):
        users = ListUsersUseCase().execute(cast.pm, uow_factory(), role=Role.TECHNICIAN)
        assert [u.name for u in users] == ["Theo Tech", "Tina Tech"]

    def test_ensure_admin_is_idempotent(self, db, uow_factory):
        first = EnsureAdminUseCase().execute("root@example.com", "Root", uow_factory())
        second = EnsureAdminUseCase().execute("ROOT@example.com", "Root", uow_factory())
        assert first.id == second.id
        assert len([u for u in db.users.values() if u.role == Role.ADMIN]) == 1
