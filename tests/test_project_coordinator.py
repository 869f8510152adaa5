"""Project lifecycle and its stock side effects."""

from __future__ import annotations

import uuid
from datetime import date

import pytest

from application import (
    AuthorizationError,
    ConflictError,
    DeleteProjectUseCase,
    GetProjectUseCase,
    ListProjectsUseCase,
    NotFoundError,
    ProjectAllocationCoordinator,
    UpdateProjectCommand,
    UpdateProjectUseCase,
    UpdateTaskCommand,
    UpdateTaskUseCase,
    ValidationError,
    VerifyProjectAllocationsUseCase,
)
from conftest import FailingPublisher, add_product, allocated, make_project, make_task, stock_of
from infrastructure import InMemoryProjectRepository, InMemoryTaskRepository
from model import ProjectProduct


def _update(uow_factory, project_id, actor, publisher=None, **fields):
    cmd = UpdateProjectCommand(project_id=uuid.UUID(project_id), actor=actor, **fields)
    return UpdateProjectUseCase(publisher).execute(cmd, uow_factory())


class TestCreateProject:
    def test_scenario_reserve_update_delete(self, db, uow_factory, cast, cable):
        """Quantity 10: reserve 4, raise to 7, delete."""
        project = make_project(uow_factory, cast, products=[(cable, 4)])
        assert stock_of(db, cable).quantity == 6
        assert allocated(db, cable, project.id) == 4

        _update(uow_factory, project.id, cast.admin, products=[ProjectProduct(cable, 7)])
        assert stock_of(db, cable).quantity == 3
        assert allocated(db, cable, project.id) == 7

        DeleteProjectUseCase().execute(uuid.UUID(project.id), cast.admin, uow_factory())
        assert stock_of(db, cable).quantity == 10
        assert stock_of(db, cable).allocations == []

    def test_scenario_insufficient_stock(self, db, uow_factory, cast):
        pid = add_product(db, quantity=2)
        with pytest.raises(ConflictError) as err:
            make_project(uow_factory, cast, products=[(pid, 5)])

        assert err.value.available == 2
        assert stock_of(db, pid).quantity == 2
        assert db.projects.all() == []

    def test_partial_batch_failure_leaves_no_trace(self, db, uow_factory, cast, cable, router):
        with pytest.raises(ConflictError):
            make_project(uow_factory, cast, products=[(cable, 4), (router, 4)])

        assert stock_of(db, cable).quantity == 10
        assert stock_of(db, router).quantity == 3
        assert db.projects.all() == []

    def test_products_require_a_stock_manager(self, uow_factory, cast, cable):
        with pytest.raises(ValidationError, match="stock manager"):
            make_project(uow_factory, cast, products=[(cable, 1)], stock=False)

    def test_zero_quantity_is_rejected(self, uow_factory, cast, cable):
        with pytest.raises(ValidationError):
            make_project(uow_factory, cast, products=[(cable, 0)])

    def test_unknown_product(self, db, uow_factory, cast):
        with pytest.raises(NotFoundError):
            make_project(uow_factory, cast, products=[(uuid.uuid4(), 1)])

    def test_wrong_role_for_client(self, uow_factory, cast):
        from application import CreateProjectCommand, CreateProjectUseCase

        cmd = CreateProjectCommand(
            name="Bad",
            company="",
            description="",
            begin_date=date(2026, 1, 1),
            end_date=date(2026, 2, 1),
            client_id=cast.tech.id,
            project_manager_id=cast.pm.id,
            actor=cast.admin,
        )
        with pytest.raises(ValidationError, match="client"):
            CreateProjectUseCase().execute(cmd, uow_factory())

    def test_project_manager_may_only_create_own_projects(self, uow_factory, cast):
        make_project(uow_factory, cast, actor=cast.pm)
        with pytest.raises(AuthorizationError):
            make_project(uow_factory, cast, actor=cast.other_pm)

    def test_assignment_notifications(self, uow_factory, cast, cable, publisher):
        make_project(uow_factory, cast, products=[(cable, 1)], publisher=publisher)

        for person in (cast.client, cast.pm, cast.stock):
            types = [n["type"] for n in publisher.for_user(person.id)]
            assert "project_assigned" in types

    def test_low_stock_alert_goes_to_stock_manager(self, uow_factory, cast, cable, publisher):
        make_project(uow_factory, cast, products=[(cable, 6)], publisher=publisher)

        alerts = [n for n in publisher.for_user(cast.stock.id) if n["type"] == "product_low_stock"]
        assert len(alerts) == 1
        assert alerts[0]["data"]["quantity"] == 4

    def test_publisher_failure_does_not_abort_creation(self, db, uow_factory, cast, cable):
        project = make_project(uow_factory, cast, products=[(cable, 2)], publisher=FailingPublisher())

        assert db.projects.fetch(uuid.UUID(project.id)) is not None
        assert stock_of(db, cable).quantity == 8
        # rows were persisted before publishing failed
        assert len(db.notifications) == 3


class TestUpdateProject:
    def test_diff_applies_reserve_adjust_and_release(self, db, uow_factory, cast, cable, router):
        project = make_project(uow_factory, cast, products=[(cable, 4)])
        spare = add_product(db, quantity=5)

        _update(
            uow_factory,
            project.id,
            cast.admin,
            products=[ProjectProduct(router, 2), ProjectProduct(spare, 5)],
        )

        assert stock_of(db, cable).quantity == 10
        assert stock_of(db, router).quantity == 1
        assert stock_of(db, spare).quantity == 0
        updated = db.projects.fetch(uuid.UUID(project.id))
        assert [(p.product_id, p.quantity) for p in updated.products] == [(router, 2), (spare, 5)]

    def test_failed_diff_changes_nothing(self, db, uow_factory, cast, cable, router):
        project = make_project(uow_factory, cast, products=[(cable, 4), (router, 1)])

        with pytest.raises(ConflictError):
            _update(
                uow_factory,
                project.id,
                cast.admin,
                products=[ProjectProduct(cable, 2), ProjectProduct(router, 10)],
            )

        assert stock_of(db, cable).quantity == 6
        assert stock_of(db, router).quantity == 2
        stored = db.projects.fetch(uuid.UUID(project.id))
        assert [(p.product_id, p.quantity) for p in stored.products] == [(cable, 4), (router, 1)]
        check = VerifyProjectAllocationsUseCase().execute(uuid.UUID(project.id), cast.stock, uow_factory())
        assert check.consistent

    def test_failed_save_unwinds_ledger(self, db, uow_factory, cast, cable):
        project = make_project(uow_factory, cast, products=[(cable, 4)])
        stale = db.projects.fetch(uuid.UUID(project.id))
        _update(uow_factory, project.id, cast.admin, name="Renamed")

        current = list(stale.products)
        stale.products = [ProjectProduct(cable, 8)]
        with pytest.raises(ConflictError, match="modified concurrently"):
            with uow_factory() as uow:
                ProjectAllocationCoordinator(uow).update(stale, current)

        assert stock_of(db, cable).quantity == 6
        assert allocated(db, cable, project.id) == 4

    def test_field_update_without_products_keeps_allocations(self, db, uow_factory, cast, cable):
        project = make_project(uow_factory, cast, products=[(cable, 4)])
        dto = _update(uow_factory, project.id, cast.pm, name="Phase 2")

        assert dto.name == "Phase 2"
        assert dto.version == project.version + 1
        assert allocated(db, cable, project.id) == 4

    def test_only_owner_or_admin_may_update(self, uow_factory, cast):
        project = make_project(uow_factory, cast)
        for outsider in (cast.other_pm, cast.client, cast.stock, cast.tech):
            with pytest.raises(AuthorizationError):
                _update(uow_factory, project.id, outsider, name="Hijack")

    def test_newcomer_is_notified(self, uow_factory, cast, db, publisher):
        project = make_project(uow_factory, cast)
        _update(uow_factory, project.id, cast.admin, project_manager_id=cast.other_pm.id, publisher=publisher)

        assert [n["type"] for n in publisher.for_user(cast.other_pm.id)] == ["project_assigned"]
        assert publisher.for_user(cast.pm.id) == []

    def test_invalid_window(self, uow_factory, cast):
        project = make_project(uow_factory, cast)
        with pytest.raises(ValidationError):
            _update(uow_factory, project.id, cast.admin, begin_date=date(2027, 6, 1))


class TestDeleteProject:
    def test_admin_only(self, uow_factory, cast):
        project = make_project(uow_factory, cast)
        with pytest.raises(AuthorizationError):
            DeleteProjectUseCase().execute(uuid.UUID(project.id), cast.pm, uow_factory())

    def test_cascades_tasks_and_assignments(self, db, uow_factory, cast, cable):
        project = make_project(uow_factory, cast, products=[(cable, 3)])
        task = make_task(uow_factory, cast, project.id, assigned_to=cast.tech.id)

        DeleteProjectUseCase().execute(uuid.UUID(project.id), cast.admin, uow_factory())

        assert db.projects.all() == []
        assert db.tasks.fetch(uuid.UUID(task.id)) is None
        assert db.users.fetch(cast.tech.id).assigned_tasks == []
        assert stock_of(db, cable).quantity == 10


class TestProjectVisibility:
    def test_participants_see_project(self, uow_factory, cast):
        project = make_project(uow_factory, cast)
        pid = uuid.UUID(project.id)
        for participant in (cast.admin, cast.pm, cast.client, cast.stock):
            assert GetProjectUseCase().execute(pid, participant, uow_factory()).id == project.id

    def test_technician_sees_project_once_assigned(self, uow_factory, cast):
        project = make_project(uow_factory, cast)
        pid = uuid.UUID(project.id)
        with pytest.raises(AuthorizationError):
            GetProjectUseCase().execute(pid, cast.tech, uow_factory())

        make_task(uow_factory, cast, project.id, assigned_to=cast.tech.id)
        assert GetProjectUseCase().execute(pid, cast.tech, uow_factory()).id == project.id

    def test_technician_membership_follows_assignments(self, monkeypatch, uow_factory, cast):
        project = make_project(uow_factory, cast)
        task = make_task(uow_factory, cast, project.id, assigned_to=cast.tech.id)
        UpdateTaskUseCase().execute(
            UpdateTaskCommand(task_id=uuid.UUID(task.id), actor=cast.pm, assigned_to=cast.other_tech.id),
            uow_factory(),
        )

        def no_task_scan(repo, project_id):
            raise AssertionError("membership must not load the project's tasks")

        monkeypatch.setattr(InMemoryTaskRepository, "list_for_project", no_task_scan)

        assert ListProjectsUseCase().execute(cast.tech, uow_factory()) == []
        assert [p.id for p in ListProjectsUseCase().execute(cast.other_tech, uow_factory())] == [project.id]

    def test_list_is_scoped(self, uow_factory, cast):
        make_project(uow_factory, cast, name="Mine")
        make_project(uow_factory, cast, name="Other", project_manager_id=cast.other_pm.id)

        assert [p.name for p in ListProjectsUseCase().execute(cast.pm, uow_factory())] == ["Mine"]
        assert len(ListProjectsUseCase().execute(cast.admin, uow_factory())) == 2


class TestConcurrentUpdates:
    """Two updates of one project racing on the same product."""

    def _run_inside_next_save(self, monkeypatch, other, after_write):
        original = InMemoryProjectRepository.save
        armed = [True]

        def save(repo, project):
            if not armed[0]:
                return original(repo, project)
            armed[0] = False
            if after_write:
                original(repo, project)
                other()
            else:
                other()
                original(repo, project)

        monkeypatch.setattr(InMemoryProjectRepository, "save", save)

    def test_writer_that_lost_the_version_moves_no_stock(self, monkeypatch, db, uow_factory, cast, cable):
        project = make_project(uow_factory, cast, products=[(cable, 4)])
        pid = uuid.UUID(project.id)
        self._run_inside_next_save(
            monkeypatch,
            lambda: _update(uow_factory, project.id, cast.admin, products=[ProjectProduct(cable, 7)]),
            after_write=False,
        )

        with pytest.raises(ConflictError, match="modified concurrently"):
            _update(uow_factory, project.id, cast.admin, products=[ProjectProduct(cable, 5)])

        stored = db.projects.fetch(pid)
        assert [p.quantity for p in stored.products] == [7]
        assert allocated(db, cable, pid) == 7
        assert stock_of(db, cable).quantity == 3
        assert VerifyProjectAllocationsUseCase().execute(pid, cast.stock, uow_factory()).consistent

    def test_writer_reading_a_claimed_version_is_refused(self, monkeypatch, db, uow_factory, cast, cable):
        project = make_project(uow_factory, cast, products=[(cable, 4)])
        pid = uuid.UUID(project.id)
        refused = []

        def late_update():
            try:
                _update(uow_factory, project.id, cast.admin, products=[ProjectProduct(cable, 7)])
            except ConflictError as exc:
                refused.append(exc)

        self._run_inside_next_save(monkeypatch, late_update, after_write=True)
        dto = _update(uow_factory, project.id, cast.admin, products=[ProjectProduct(cable, 5)])

        assert len(refused) == 1
        assert [p.quantity for p in dto.products] == [5]
        stored = db.projects.fetch(pid)
        assert [p.quantity for p in stored.products] == [5]
        assert stored.version == project.version + 1
        assert allocated(db, cable, pid) == 5
        assert stock_of(db, cable).quantity == 5
        assert VerifyProjectAllocationsUseCase().execute(pid, cast.stock, uow_factory()).consistent
