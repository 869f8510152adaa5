"""
application.py

Application layer for the Field Operations Project & Inventory
Management System.

Overview
--------
The application layer sits between the presentation layer (API / WebSocket)
and the domain / service layer.  It is responsible for:

  1. Defining clean output DTOs (dataclasses) that carry only the data
     the presentation layer needs — no raw domain objects are leaked upward.
  2. Declaring abstract Repository interfaces, the event publisher and the
     file store so that the application layer stays persistence-agnostic
     (implementations live in infrastructure.py).
  3. Declaring the UnitOfWork abstraction.  Stock is spread over several
     documents, so the unit of work keeps a compensation log: every write
     registers its inverse, rollback unwinds the log, commit forgets it.
  4. Hosting the three cross-document components:
       InventoryLedger               – atomic reserve / release / adjust
                                       and all-or-nothing batches
       ProjectAllocationCoordinator  – project lifecycle ↔ ledger
       NotificationDispatcher        – persist, then publish
  5. Implementing Use Case handlers — one class per user-facing operation —
     that authorise the caller, orchestrate services and repositories, commit,
     and only then dispatch notifications.

Structure
---------
DTOs
    UserDTO, ProductDTO, ProjectDTO, TaskDTO, TaskBoardDTO,
    NotificationDTO, NotificationPageDTO, AllocationCheckDTO

Repository interfaces
    AbstractUserRepository
    AbstractProductRepository
    AbstractProjectRepository
    AbstractTaskRepository
    AbstractNotificationRepository

Unit of Work
    CompensationLog, AbstractUnitOfWork

Ports
    AbstractEventPublisher, AbstractFileStore

Use Cases
    --- Users ---
    RegisterUserUseCase, GetUserUseCase, ListUsersUseCase, EnsureAdminUseCase

    --- Products ---
    CreateProductUseCase, UpdateProductUseCase, DeleteProductUseCase,
    GetProductUseCase, ListProductsUseCase

    --- Projects ---
    CreateProjectUseCase, UpdateProjectUseCase, DeleteProjectUseCase,
    GetProjectUseCase, ListProjectsUseCase, VerifyProjectAllocationsUseCase,
    GetProjectBoardUseCase

    --- Tasks ---
    CreateTaskUseCase, GetTaskUseCase, UpdateTaskUseCase, MoveTaskUseCase,
    DeleteTaskUseCase, AddAttachmentsUseCase, RemoveAttachmentsUseCase,
    AddWorkEvidenceUseCase, RemoveWorkEvidenceUseCase, AddCommentUseCase,
    DeleteCommentUseCase, SendPrivateMessageUseCase,
    DeletePrivateMessageUseCase

Design notes
------------
- Use cases receive commands and return DTOs; no domain objects cross the
  application boundary.
- Each use case accepts a UnitOfWork in execute().  Use cases with side
  effects outside the store (notifications, file deletion) receive those
  ports in their constructor.
- Notifications are dispatched after the unit of work has committed.  A
  failing notification is logged and never undoes the business operation.
- All timestamps flowing out are ISO-8601 strings (UTC).
- Services raise ValueError; use cases translate it into ValidationError.
"""

from __future__ import annotations

import abc
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from loguru import logger

from config import settings
from model import (
    Attachment,
    ChangeLogEntry,
    Comment,
    FileDescriptor,
    Notification,
    NotificationType,
    Principal,
    PrivateMessage,
    Product,
    Project,
    ProjectProduct,
    ProjectStatus,
    Role,
    StockMutation,
    Task,
    TaskPriority,
    TaskStatus,
    User,
    WorkEvidence,
)
from service import (
    UNSET,
    AccessPolicy,
    Action,
    AllocationPlan,
    AllocationPlanner,
    NotificationService,
    ProductService,
    ProjectService,
    Relation,
    StepKind,
    TaskWorkflowService,
    UserService,
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Raised when a use case cannot complete due to a business rule violation."""


class ValidationError(ApplicationError):
    """Raised when input breaks a business rule (bad dates, missing evidence, ...)."""


class NotFoundError(ApplicationError):
    """Raised when a requested entity does not exist."""


class AuthorizationError(ApplicationError):
    """Raised when the acting user is not allowed to perform the action."""


class ConflictError(ApplicationError):
    """
    Raised when the request collides with current state: insufficient stock,
    duplicate unique key, or a stale document version.
    """

    def __init__(self, message: str, available: Optional[int] = None):
        super().__init__(message)
        self.available = available


class IntegrityError(ApplicationError):
    """Raised when a stock invariant is found broken.  Always logged at CRITICAL."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _fmt_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


def _sid(value: Optional[uuid.UUID]) -> Optional[str]:
    return str(value) if value else None


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

# ---------------------------------------------------------------------------
# User DTOs
# ---------------------------------------------------------------------------

@dataclass
class UserDTO:
    id: str
    name: str
    email: str
    role: str
    phone_number: str
    assigned_tasks: List[str]
    created_at: str


# ---------------------------------------------------------------------------
# Product DTOs
# ---------------------------------------------------------------------------

@dataclass
class AllocationDTO:
    project_id: str
    allocated_quantity: int


@dataclass
class ProductDTO:
    id: str
    name: str
    reference: str
    category: str
    description: str
    quantity: int
    price: float
    allocated_total: int
    allocations: List[AllocationDTO]
    created_at: str
    updated_at: str


# ---------------------------------------------------------------------------
# Project DTOs
# ---------------------------------------------------------------------------

@dataclass
class ProjectProductDTO:
    product_id: str
    quantity: int


@dataclass
class ProjectDTO:
    id: str
    name: str
    company: str
    description: str
    begin_date: Optional[str]
    end_date: Optional[str]
    status: str
    client_id: Optional[str]
    project_manager_id: Optional[str]
    stock_manager_id: Optional[str]
    products: List[ProjectProductDTO]
    tasks: List[str]
    version: int
    created_at: str
    updated_at: str


@dataclass
class AllocationLineDTO:
    product_id: str
    requested: int
    allocated: int


@dataclass
class AllocationCheckDTO:
    project_id: str
    consistent: bool
    lines: List[AllocationLineDTO]


# ---------------------------------------------------------------------------
# Task DTOs
# ---------------------------------------------------------------------------

@dataclass
class AttachmentDTO:
    id: str
    name: str
    url: str
    mimetype: str
    size: int
    file_kind: str
    uploaded_by: Optional[str]
    uploaded_at: str


@dataclass
class WorkEvidenceDTO:
    id: str
    image_url: str
    original_name: str
    mimetype: str
    size: int
    uploaded_by: Optional[str]
    uploaded_at: str


@dataclass
class CommentDTO:
    id: str
    user_id: Optional[str]
    content: str
    created_at: str


@dataclass
class PrivateMessageDTO:
    id: str
    sender_id: Optional[str]
    recipient_id: Optional[str]
    content: str
    created_at: str


@dataclass
class ChangeLogEntryDTO:
    id: str
    updated_by: Optional[str]
    updated_at: str
    changes: Dict[str, Any]
    message: str


@dataclass
class TaskDTO:
    id: str
    project_id: str
    name: str
    description: str
    begin_date: Optional[str]
    end_date: Optional[str]
    priority: str
    status: str
    assigned_to: Optional[str]
    comments: List[CommentDTO]
    private_messages: List[PrivateMessageDTO]
    attachments: List[AttachmentDTO]
    work_evidence: List[WorkEvidenceDTO]
    change_log: List[ChangeLogEntryDTO]
    last_updated_by: Optional[str]
    version: int
    created_at: str
    updated_at: str


@dataclass
class TaskBoardDTO:
    """A project's tasks grouped into board columns, keyed by status value."""
    project_id: str
    columns: Dict[str, List[TaskDTO]]


# ---------------------------------------------------------------------------
# Notification DTOs
# ---------------------------------------------------------------------------

@dataclass
class NotificationDTO:
    id: str
    to: str
    type: str
    data: Dict[str, Any]
    read: bool
    created_at: str
    expires_at: Optional[str]


@dataclass
class PaginationDTO:
    total: int
    page: int
    pages: int
    limit: int


@dataclass
class NotificationPageDTO:
    notifications: List[NotificationDTO]
    pagination: PaginationDTO


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def user(u: User) -> UserDTO:
        return UserDTO(
            id=str(u.id),
            name=u.name,
            email=u.email,
            role=u.role.value,
            phone_number=u.phone_number,
            assigned_tasks=[str(t) for t in u.assigned_tasks],
            created_at=_fmt(u.created_at),
        )

    @staticmethod
    def product(p: Product) -> ProductDTO:
        return ProductDTO(
            id=str(p.id),
            name=p.name,
            reference=p.reference,
            category=p.category,
            description=p.description,
            quantity=p.quantity,
            price=p.price,
            allocated_total=p.allocated_total,
            allocations=[
                AllocationDTO(project_id=str(a.project_id), allocated_quantity=a.allocated_quantity)
                for a in p.allocations
            ],
            created_at=_fmt(p.created_at),
            updated_at=_fmt(p.updated_at),
        )

    @staticmethod
    def project(p: Project) -> ProjectDTO:
        return ProjectDTO(
            id=str(p.id),
            name=p.name,
            company=p.company,
            description=p.description,
            begin_date=_fmt_date(p.begin_date),
            end_date=_fmt_date(p.end_date),
            status=p.status.value,
            client_id=_sid(p.client_id),
            project_manager_id=_sid(p.project_manager_id),
            stock_manager_id=_sid(p.stock_manager_id),
            products=[
                ProjectProductDTO(product_id=str(pp.product_id), quantity=pp.quantity)
                for pp in p.products
            ],
            tasks=[str(t) for t in p.tasks],
            version=p.version,
            created_at=_fmt(p.created_at),
            updated_at=_fmt(p.updated_at),
        )

    @staticmethod
    def attachment(a: Attachment) -> AttachmentDTO:
        return AttachmentDTO(
            id=str(a.id),
            name=a.name,
            url=a.url,
            mimetype=a.mimetype,
            size=a.size,
            file_kind=a.file_kind.value,
            uploaded_by=_sid(a.uploaded_by),
            uploaded_at=_fmt(a.uploaded_at),
        )

    @staticmethod
    def evidence(e: WorkEvidence) -> WorkEvidenceDTO:
        return WorkEvidenceDTO(
            id=str(e.id),
            image_url=e.image_url,
            original_name=e.original_name,
            mimetype=e.mimetype,
            size=e.size,
            uploaded_by=_sid(e.uploaded_by),
            uploaded_at=_fmt(e.uploaded_at),
        )

    @staticmethod
    def comment(c: Comment) -> CommentDTO:
        return CommentDTO(
            id=str(c.id),
            user_id=_sid(c.user_id),
            content=c.content,
            created_at=_fmt(c.created_at),
        )

    @staticmethod
    def private_message(m: PrivateMessage) -> PrivateMessageDTO:
        return PrivateMessageDTO(
            id=str(m.id),
            sender_id=_sid(m.sender_id),
            recipient_id=_sid(m.recipient_id),
            content=m.content,
            created_at=_fmt(m.created_at),
        )

    @staticmethod
    def change(e: ChangeLogEntry) -> ChangeLogEntryDTO:
        return ChangeLogEntryDTO(
            id=str(e.id),
            updated_by=_sid(e.updated_by),
            updated_at=_fmt(e.updated_at),
            changes=dict(e.changes),
            message=e.message,
        )

    @staticmethod
    def task(t: Task, viewer: Optional[Principal] = None) -> TaskDTO:
        """Private messages are only shown to their correspondents (and admins)."""
        messages = t.private_messages
        if viewer is not None and viewer.role != Role.ADMIN:
            messages = [
                m for m in messages if viewer.id in (m.sender_id, m.recipient_id)
            ]
        return TaskDTO(
            id=str(t.id),
            project_id=str(t.project_id),
            name=t.name,
            description=t.description,
            begin_date=_fmt_date(t.begin_date),
            end_date=_fmt_date(t.end_date),
            priority=t.priority.value,
            status=t.status.value,
            assigned_to=_sid(t.assigned_to),
            comments=[_Assembler.comment(c) for c in t.comments],
            private_messages=[_Assembler.private_message(m) for m in messages],
            attachments=[_Assembler.attachment(a) for a in t.attachments],
            work_evidence=[_Assembler.evidence(e) for e in t.work_evidence],
            change_log=[_Assembler.change(e) for e in t.change_log],
            last_updated_by=_sid(t.last_updated_by),
            version=t.version,
            created_at=_fmt(t.created_at),
            updated_at=_fmt(t.updated_at),
        )

    @staticmethod
    def notification(n: Notification) -> NotificationDTO:
        return NotificationDTO(
            id=str(n.id),
            to=str(n.to),
            type=n.type.value,
            data=dict(n.data),
            read=n.read,
            created_at=_fmt(n.created_at),
            expires_at=_fmt(n.expires_at),
        )


# ===========================================================================
# REPOSITORY INTERFACES
# ===========================================================================

class AbstractUserRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, user_id: uuid.UUID) -> Optional[User]: ...
    @abc.abstractmethod
    def get_by_email(self, email: str) -> Optional[User]: ...
    @abc.abstractmethod
    def list_all(self) -> List[User]: ...
    @abc.abstractmethod
    def add(self, user: User) -> None: ...
    @abc.abstractmethod
    def add_assigned_task(self, user_id: uuid.UUID, task_id: uuid.UUID) -> None: ...
    @abc.abstractmethod
    def remove_assigned_task(self, user_id: uuid.UUID, task_id: uuid.UUID) -> None: ...


class AbstractProductRepository(abc.ABC):
    """
    reserve / release / adjust are single atomic operators on one product
    document.  They return None when the product does not exist and raise
    ConflictError (carrying `available`) when free stock is insufficient.
    They do not register compensations themselves; the ledger does.

    adjust() also takes an `expected` allocation: when given, the operator
    only applies if the project's entry still holds exactly that quantity,
    and raises ConflictError without `available` otherwise.
    """

    @abc.abstractmethod
    def get(self, product_id: uuid.UUID) -> Optional[Product]: ...
    @abc.abstractmethod
    def get_by_reference(self, reference: str) -> Optional[Product]: ...
    @abc.abstractmethod
    def list_all(self) -> List[Product]: ...
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[Product]: ...
    @abc.abstractmethod
    def add(self, product: Product) -> None: ...
    @abc.abstractmethod
    def update_details(self, product_id: uuid.UUID, changes: Dict[str, Any]) -> Optional[Product]: ...
    @abc.abstractmethod
    def delete(self, product_id: uuid.UUID) -> None: ...
    @abc.abstractmethod
    def reserve(
        self, product_id: uuid.UUID, project_id: uuid.UUID, quantity: int
    ) -> Optional[StockMutation]: ...
    @abc.abstractmethod
    def release(
        self, product_id: uuid.UUID, project_id: uuid.UUID, quantity: int
    ) -> Optional[StockMutation]: ...
    @abc.abstractmethod
    def adjust(
        self,
        product_id: uuid.UUID,
        project_id: uuid.UUID,
        new_quantity: int,
        expected: Optional[int] = None,
    ) -> Optional[StockMutation]: ...


class AbstractProjectRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, project_id: uuid.UUID) -> Optional[Project]: ...
    @abc.abstractmethod
    def list_all(self) -> List[Project]: ...
    @abc.abstractmethod
    def add(self, project: Project) -> None: ...
    @abc.abstractmethod
    def save(self, project: Project) -> None:
        """Optimistic write: raises ConflictError when project.version is stale."""
    @abc.abstractmethod
    def delete(self, project_id: uuid.UUID) -> None: ...
    @abc.abstractmethod
    def add_task(self, project_id: uuid.UUID, task_id: uuid.UUID) -> None: ...
    @abc.abstractmethod
    def remove_task(self, project_id: uuid.UUID, task_id: uuid.UUID) -> None: ...


class AbstractTaskRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, task_id: uuid.UUID) -> Optional[Task]: ...
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[Task]: ...
    @abc.abstractmethod
    def add(self, task: Task) -> None: ...
    @abc.abstractmethod
    def save(self, task: Task) -> None:
        """Optimistic write: raises ConflictError when task.version is stale."""
    @abc.abstractmethod
    def delete(self, task_id: uuid.UUID) -> None: ...


class AbstractNotificationRepository(abc.ABC):
    """Expired rows are invisible to every read."""

    @abc.abstractmethod
    def add(self, notification: Notification) -> None: ...
    @abc.abstractmethod
    def list_for_user(
        self,
        user_id: uuid.UUID,
        read: Optional[bool] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> List[Notification]: ...
    @abc.abstractmethod
    def count_for_user(self, user_id: uuid.UUID, read: Optional[bool] = None) -> int: ...
    @abc.abstractmethod
    def mark_read(self, notification_id: uuid.UUID, user_id: uuid.UUID) -> Optional[Notification]: ...
    @abc.abstractmethod
    def mark_all_read(self, user_id: uuid.UUID) -> int: ...
    @abc.abstractmethod
    def purge_expired(self, now: Optional[datetime] = None) -> int: ...


# ===========================================================================
# PORTS
# ===========================================================================

NOTIFICATION_TOPIC = "notifications.push"


class AbstractEventPublisher(abc.ABC):
    @abc.abstractmethod
    def publish(self, topic: str, payload: Dict[str, Any]) -> None: ...


class AbstractFileStore(abc.ABC):
    @abc.abstractmethod
    def delete(self, url: str) -> None:
        """Remove a stored file.  Raises FileNotFoundError when it is already gone."""


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

class CompensationLog:
    """
    Ordered list of inverse operations registered by writes inside one unit
    of work.  unwind() runs them newest first; an inverse that fails is
    logged at CRITICAL and counted, and the remaining inverses still run.
    """

    def __init__(self):
        self._entries: List[Tuple[str, Callable[[], None]]] = []

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, description: str, undo: Callable[[], None]) -> None:
        self._entries.append((description, undo))

    def mark(self) -> int:
        """A savepoint that unwind() can roll back to."""
        return len(self._entries)

    def unwind(self, to_mark: int = 0) -> int:
        failures = 0
        while len(self._entries) > to_mark:
            description, undo = self._entries.pop()
            try:
                undo()
                logger.warning("Compensated: {}", description)
            except Exception:
                failures += 1
                logger.opt(exception=True).critical("Compensation failed: {}", description)
        return failures

    def clear(self) -> None:
        self._entries.clear()


class AbstractUnitOfWork(abc.ABC):
    """
    Groups all repositories under a single transactional boundary.
    Use as a context manager:

        with uow:
            uow.projects.save(project)
            uow.commit()
    """
    users: AbstractUserRepository
    products: AbstractProductRepository
    projects: AbstractProjectRepository
    tasks: AbstractTaskRepository
    notifications: AbstractNotificationRepository
    compensations: CompensationLog

    def __enter__(self) -> "AbstractUnitOfWork":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type:
            self.rollback()
        else:
            self.commit()

    @abc.abstractmethod
    def commit(self) -> None: ...

    @abc.abstractmethod
    def rollback(self) -> None: ...


# ===========================================================================
# SERVICE SINGLETONS (shared across use cases)
# ===========================================================================

_policy = AccessPolicy()
_planner = AllocationPlanner()
_product_svc = ProductService()
_project_svc = ProjectService()
_user_svc = UserService()
_workflow = TaskWorkflowService(max_file_size=settings.max_upload_bytes)
_notification_svc = NotificationService(
    retention=settings.notification_retention,
    max_page_size=settings.notification_page_limit,
)


# ===========================================================================
# INVENTORY LEDGER
# ===========================================================================

class InventoryLedger:
    """
    Moves units between a product's free quantity and a project's allocation
    entry.  Every single operation is one atomic repository operator; every
    applied operation registers its inverse in the unit of work's
    compensation log, so batches can be undone step by step.
    """

    def __init__(self, uow: AbstractUnitOfWork):
        self._uow = uow

    def reserve(self, product_id: uuid.UUID, quantity: int, project_id: uuid.UUID) -> StockMutation:
        if quantity < 1:
            raise ValidationError("Reserved quantity must be at least 1.")
        try:
            mutation = self._uow.products.reserve(product_id, project_id, quantity)
        except ConflictError as exc:
            raise ConflictError(
                f"Insufficient stock for product {product_id}: "
                f"requested {quantity}, available {exc.available}.",
                available=exc.available,
            ) from exc
        if mutation is None:
            raise NotFoundError(f"Product {product_id} not found.")
        self._remember(project_id, mutation, f"reserve {quantity} x {product_id} for {project_id}")
        return mutation

    def release(self, product_id: uuid.UUID, quantity: int, project_id: uuid.UUID) -> StockMutation:
        """Idempotent: releasing what is not held is a no-op, over-release is clamped."""
        mutation = self._uow.products.release(product_id, project_id, quantity)
        if mutation is None:
            raise NotFoundError(f"Product {product_id} not found.")
        self._remember(project_id, mutation, f"release {quantity} x {product_id} from {project_id}")
        return mutation

    def adjust(
        self,
        product_id: uuid.UUID,
        project_id: uuid.UUID,
        new_quantity: int,
        expected: Optional[int] = None,
    ) -> StockMutation:
        """Set the project's allocation; with `expected`, only from that exact quantity."""
        if new_quantity < 0:
            raise ValidationError("Allocated quantity cannot be negative.")
        try:
            mutation = self._uow.products.adjust(product_id, project_id, new_quantity, expected)
        except ConflictError as exc:
            if exc.available is None:
                raise
            raise ConflictError(
                f"Insufficient stock for product {product_id}: "
                f"cannot raise allocation to {new_quantity}, available {exc.available}.",
                available=exc.available,
            ) from exc
        if mutation is None:
            raise NotFoundError(f"Product {product_id} not found.")
        self._remember(project_id, mutation, f"adjust {product_id} for {project_id} to {new_quantity}")
        return mutation

    # -- batches ------------------------------------------------------------

    def reserve_batch(self, project_id: uuid.UUID, items: List[ProjectProduct]) -> List[StockMutation]:
        """All-or-nothing reservation of a whole product list."""
        return self._atomically(
            lambda: [self.reserve(i.product_id, i.quantity, project_id) for i in items]
        )

    def apply_plan(self, project_id: uuid.UUID, plan: AllocationPlan) -> List[StockMutation]:
        """
        All-or-nothing diff.  Every step is pinned to the allocation the plan
        was computed from, so a ledger that moved underneath it fails with
        ConflictError instead of being overwritten.
        """
        def run() -> List[StockMutation]:
            mutations = []
            for step in plan:
                target = 0 if step.kind is StepKind.RELEASE else step.quantity
                mutations.append(
                    self.adjust(step.product_id, project_id, target, expected=step.previous_quantity)
                )
            return mutations

        return self._atomically(run)

    def release_all(self, project_id: uuid.UUID) -> List[StockMutation]:
        """Return every unit held by the project, whatever its product list says."""
        def run() -> List[StockMutation]:
            mutations = []
            for product in self._uow.products.list_for_project(project_id):
                entry = product.allocation_for(project_id)
                if entry is not None and entry.allocated_quantity > 0:
                    mutations.append(self.release(product.id, entry.allocated_quantity, project_id))
            return mutations

        return self._atomically(run)

    def rollback_to(self, mark: int, cause: BaseException) -> None:
        failures = self._uow.compensations.unwind(mark)
        if failures:
            logger.critical(
                "{} stock compensation(s) failed while unwinding after: {}", failures, cause
            )
            raise IntegrityError(
                f"Stock could not be fully restored ({failures} step(s) failed)."
            ) from cause

    # -- integrity ----------------------------------------------------------

    def verify_allocations(self, project: Project) -> AllocationCheckDTO:
        """Compare the project's product list with the ledger's allocation entries."""
        held: Dict[uuid.UUID, int] = {}
        for product in self._uow.products.list_for_project(project.id):
            entry = product.allocation_for(project.id)
            if entry is not None:
                held[product.id] = entry.allocated_quantity
        wanted = {pp.product_id: pp.quantity for pp in project.products}

        lines = [
            AllocationLineDTO(
                product_id=str(pid),
                requested=wanted.get(pid, 0),
                allocated=held.get(pid, 0),
            )
            for pid in list(wanted) + [p for p in held if p not in wanted]
        ]
        mismatched = [line for line in lines if line.requested != line.allocated]
        if mismatched:
            logger.critical(
                "Allocation mismatch on project {}: {}",
                project.id,
                [asdict(line) for line in mismatched],
            )
            raise IntegrityError(
                f"Project {project.id} allocations do not match its product list "
                f"({len(mismatched)} mismatched product(s))."
            )
        return AllocationCheckDTO(project_id=str(project.id), consistent=True, lines=lines)

    # -- internals ----------------------------------------------------------

    def _atomically(self, fn: Callable[[], List[StockMutation]]) -> List[StockMutation]:
        mark = self._uow.compensations.mark()
        try:
            return fn()
        except Exception as exc:
            self.rollback_to(mark, exc)
            raise

    def _remember(self, project_id: uuid.UUID, mutation: StockMutation, description: str) -> None:
        logger.debug(
            "Ledger {}: free={} allocated {}→{}",
            description,
            mutation.product.quantity,
            mutation.previous_allocated,
            mutation.allocated,
        )
        if mutation.delta == 0:
            return
        products = self._uow.products
        product_id = mutation.product.id
        previous, applied = mutation.previous_allocated, mutation.allocated

        # Restore the allocation entry only while it still holds what this step
        # wrote; a later writer's quantity is never overwritten.
        def undo() -> None:
            if products.adjust(product_id, project_id, previous, expected=applied) is None:
                raise NotFoundError(f"Product {product_id} vanished during compensation.")

        self._uow.compensations.record(f"undo {description}", undo)


# ===========================================================================
# NOTIFICATION DISPATCHER
# ===========================================================================

@dataclass
class PendingNotification:
    to: uuid.UUID
    type: NotificationType
    data: Dict[str, Any] = field(default_factory=dict)


class NotificationDispatcher:
    """
    Persists notifications and publishes them on NOTIFICATION_TOPIC as
    {"userId": ..., "notification": {...}}.  Reads are always scoped to
    the requesting user.  Every notify() also drops rows past their expiry,
    so the store does not grow with dead rows between restarts.
    """

    def __init__(self, uow: AbstractUnitOfWork, publisher: Optional[AbstractEventPublisher] = None):
        self._uow = uow
        self._publisher = publisher

    def notify(
        self, to: uuid.UUID, notification_type: NotificationType, data: Dict[str, Any]
    ) -> NotificationDTO:
        with self._uow:
            purged = self._uow.notifications.purge_expired()
            notification = _notification_svc.build(to, notification_type, data)
            self._uow.notifications.add(notification)
            self._uow.commit()
        if purged:
            logger.debug("Purged {} expired notification(s)", purged)
        dto = _Assembler.notification(notification)
        if self._publisher is not None:
            self._publisher.publish(
                NOTIFICATION_TOPIC, {"userId": str(to), "notification": asdict(dto)}
            )
        return dto

    def dispatch_all(self, pending: Iterable[PendingNotification]) -> int:
        """Best-effort delivery of notifications raised by a committed operation."""
        delivered = 0
        for item in pending:
            try:
                self.notify(item.to, item.type, item.data)
                delivered += 1
            except Exception:
                logger.opt(exception=True).error(
                    "Failed to dispatch {} notification to {}", item.type.value, item.to
                )
        return delivered

    def get_user_notifications(
        self,
        user_id: uuid.UUID,
        page: int = 1,
        limit: int = 20,
        read: Optional[bool] = None,
    ) -> NotificationPageDTO:
        page, limit, offset = _notification_svc.page_window(page, limit)
        with self._uow:
            rows = self._uow.notifications.list_for_user(user_id, read=read, offset=offset, limit=limit)
            total = self._uow.notifications.count_for_user(user_id, read=read)
        return NotificationPageDTO(
            notifications=[_Assembler.notification(n) for n in rows],
            pagination=PaginationDTO(
                total=total,
                page=page,
                pages=_notification_svc.page_count(total, limit),
                limit=limit,
            ),
        )

    def mark_as_read(self, notification_id: uuid.UUID, user_id: uuid.UUID) -> NotificationDTO:
        with self._uow:
            notification = self._uow.notifications.mark_read(notification_id, user_id)
            if notification is None:
                raise NotFoundError("Notification not found")
            self._uow.commit()
            return _Assembler.notification(notification)

    def mark_all_as_read(self, user_id: uuid.UUID) -> int:
        with self._uow:
            modified = self._uow.notifications.mark_all_read(user_id)
            self._uow.commit()
            return modified

    def get_unread_count(self, user_id: uuid.UUID) -> int:
        with self._uow:
            return self._uow.notifications.count_for_user(user_id, read=False)

    def purge_expired(self) -> int:
        with self._uow:
            purged = self._uow.notifications.purge_expired()
            self._uow.commit()
        if purged:
            logger.info("Purged {} expired notification(s)", purged)
        return purged


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

def _get_user_or_raise(uow: AbstractUnitOfWork, user_id: uuid.UUID) -> User:
    user = uow.users.get(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found.")
    return user


def _get_product_or_raise(uow: AbstractUnitOfWork, product_id: uuid.UUID) -> Product:
    product = uow.products.get(product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found.")
    return product


def _get_project_or_raise(uow: AbstractUnitOfWork, project_id: uuid.UUID) -> Project:
    project = uow.projects.get(project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found.")
    return project


def _get_task_or_raise(uow: AbstractUnitOfWork, task_id: uuid.UUID) -> Task:
    task = uow.tasks.get(task_id)
    if task is None:
        raise NotFoundError(f"Task {task_id} not found.")
    return task


def _is_team_member(uow: AbstractUnitOfWork, user_id: uuid.UUID, project: Project) -> bool:
    user = uow.users.get(user_id)
    if user is None or not project.tasks:
        return False
    return not set(project.tasks).isdisjoint(user.assigned_tasks)


def _relations(
    uow: AbstractUnitOfWork,
    actor: Principal,
    project: Optional[Project] = None,
    task: Optional[Task] = None,
) -> Set[Relation]:
    team_member = (
        actor.role == Role.TECHNICIAN
        and project is not None
        and _is_team_member(uow, actor.id, project)
    )
    return _policy.relations_for(actor.id, project, task, team_member=team_member)


def _authorize(
    uow: AbstractUnitOfWork,
    action: Action,
    actor: Principal,
    project: Optional[Project] = None,
    task: Optional[Task] = None,
    extra: Iterable[Relation] = (),
) -> None:
    relations = _relations(uow, actor, project, task) | set(extra)
    if not _policy.permits(action, actor.role, relations):
        raise AuthorizationError(
            f"A user with role '{actor.role.value}' is not allowed to {action.value} here."
        )


def _require_member(
    uow: AbstractUnitOfWork, user_id: uuid.UUID, expected: Role, label: str
) -> User:
    user = _get_user_or_raise(uow, user_id)
    try:
        _project_svc.check_member(user, expected, label)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    return user


def _require_products(uow: AbstractUnitOfWork, items: Iterable[ProjectProduct]) -> None:
    for item in items:
        _get_product_or_raise(uow, item.product_id)


def _low_stock_alerts(project: Project, mutations: Iterable[StockMutation]) -> List[PendingNotification]:
    if project.stock_manager_id is None:
        return []
    alerts = []
    for m in mutations:
        if m.delta > 0 and m.product.quantity <= settings.low_stock_threshold:
            alerts.append(
                PendingNotification(
                    to=project.stock_manager_id,
                    type=NotificationType.PRODUCT_LOW_STOCK,
                    data={
                        "productId": str(m.product.id),
                        "productName": m.product.name,
                        "reference": m.product.reference,
                        "quantity": m.product.quantity,
                        "projectId": str(project.id),
                    },
                )
            )
    return alerts


def _project_assigned(project: Project, user_id: uuid.UUID, role: Role) -> PendingNotification:
    return PendingNotification(
        to=user_id,
        type=NotificationType.PROJECT_ASSIGNED,
        data={"projectId": str(project.id), "projectName": project.name, "role": role.value},
    )


def _task_watchers(project: Project, task: Task, actor: Principal) -> List[uuid.UUID]:
    """Assignee and project manager, minus whoever triggered the event."""
    watchers = []
    for user_id in (task.assigned_to, project.project_manager_id):
        if user_id and user_id != actor.id and user_id not in watchers:
            watchers.append(user_id)
    return watchers


def _task_event(task: Task, **extra: Any) -> Dict[str, Any]:
    data = {"taskId": str(task.id), "taskName": task.name, "projectId": str(task.project_id)}
    data.update(extra)
    return data


def _task_file_urls(task: Task) -> List[str]:
    return [a.url for a in task.attachments] + [e.image_url for e in task.work_evidence]


def _delete_files(file_store: Optional[AbstractFileStore], urls: Iterable[str]) -> None:
    """Remove stored files after the owning documents are gone.  Never raises."""
    if file_store is None:
        return
    for url in urls:
        try:
            file_store.delete(url)
        except FileNotFoundError:
            logger.warning("File already missing, skipping: {}", url)
        except Exception:
            logger.opt(exception=True).warning("Could not delete file {}", url)


# ===========================================================================
# PROJECT ALLOCATION COORDINATOR
# ===========================================================================

class ProjectAllocationCoordinator:
    """
    Keeps a project's product list and the ledger's allocation entries in
    step.  On update the project version is claimed before any stock moves,
    so a concurrent writer fails on its save instead of interleaving with
    the diff; a failing diff unwinds the claim together with the ledger.
    """

    def __init__(self, uow: AbstractUnitOfWork):
        self._uow = uow
        self._ledger = InventoryLedger(uow)

    def create(self, project: Project) -> List[StockMutation]:
        mark = self._uow.compensations.mark()
        mutations = self._ledger.reserve_batch(project.id, project.products)
        try:
            self._uow.projects.add(project)
        except Exception as exc:
            self._ledger.rollback_to(mark, exc)
            raise
        return mutations

    def update(self, project: Project, current: List[ProjectProduct]) -> List[StockMutation]:
        """`project.products` already holds the desired list; `current` is what is reserved."""
        plan = _planner.plan(current, project.products)
        mark = self._uow.compensations.mark()
        self._uow.projects.save(project)
        try:
            return self._ledger.apply_plan(project.id, plan)
        except Exception as exc:
            self._ledger.rollback_to(mark, exc)
            raise

    def delete(self, project: Project) -> List[StockMutation]:
        mark = self._uow.compensations.mark()
        mutations = self._ledger.release_all(project.id)
        try:
            self._uow.projects.delete(project.id)
        except Exception as exc:
            self._ledger.rollback_to(mark, exc)
            raise
        return mutations


# ===========================================================================
# USE CASES — USERS
# ===========================================================================

@dataclass
class RegisterUserCommand:
    name: str
    email: str
    role: Role
    actor: Principal
    phone_number: str = ""


class RegisterUserUseCase:
    def execute(self, cmd: RegisterUserCommand, uow: AbstractUnitOfWork) -> UserDTO:
        with uow:
            _authorize(uow, Action.MANAGE_USERS, cmd.actor)
            try:
                user = _user_svc.create_user(cmd.name, cmd.email, cmd.role, cmd.phone_number)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            if uow.users.get_by_email(user.email) is not None:
                raise ConflictError(f"A user with email '{user.email}' already exists.")
            uow.users.add(user)
            uow.commit()
            logger.info("Registered {} user {}", user.role.value, user.email)
            return _Assembler.user(user)


class GetUserUseCase:
    def execute(self, user_id: uuid.UUID, actor: Principal, uow: AbstractUnitOfWork) -> UserDTO:
        with uow:
            if actor.id != user_id:
                _authorize(uow, Action.VIEW_USERS, actor)
            return _Assembler.user(_get_user_or_raise(uow, user_id))


class ListUsersUseCase:
    def execute(
        self, actor: Principal, uow: AbstractUnitOfWork, role: Optional[Role] = None
    ) -> List[UserDTO]:
        with uow:
            _authorize(uow, Action.VIEW_USERS, actor)
            users = uow.users.list_all()
            if role is not None:
                users = [u for u in users if u.role == role]
            return [_Assembler.user(u) for u in sorted(users, key=lambda u: u.name)]


class EnsureAdminUseCase:
    """Create the bootstrap administrator unless an account with that email exists."""

    def execute(self, email: str, name: str, uow: AbstractUnitOfWork) -> UserDTO:
        with uow:
            existing = uow.users.get_by_email(email.strip().lower())
            if existing is not None:
                return _Assembler.user(existing)
            user = _user_svc.create_user(name, email, Role.ADMIN)
            uow.users.add(user)
            uow.commit()
            logger.info("Admin user created: {}", user.email)
            return _Assembler.user(user)


# ===========================================================================
# USE CASES — PRODUCTS
# ===========================================================================

@dataclass
class CreateProductCommand:
    name: str
    reference: str
    category: str
    quantity: int
    price: float
    actor: Principal
    description: str = ""


class CreateProductUseCase:
    def execute(self, cmd: CreateProductCommand, uow: AbstractUnitOfWork) -> ProductDTO:
        with uow:
            _authorize(uow, Action.MANAGE_PRODUCTS, cmd.actor)
            try:
                product = _product_svc.create_product(
                    name=cmd.name,
                    reference=cmd.reference,
                    category=cmd.category,
                    quantity=cmd.quantity,
                    price=cmd.price,
                    description=cmd.description,
                )
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            if uow.products.get_by_reference(product.reference) is not None:
                raise ConflictError(f"Product with reference '{product.reference}' already exists.")
            uow.products.add(product)
            uow.commit()
            return _Assembler.product(product)


@dataclass
class UpdateProductCommand:
    product_id: uuid.UUID
    actor: Principal
    name: Optional[str] = None
    reference: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    quantity: Optional[int] = None
    price: Optional[float] = None


class UpdateProductUseCase:
    """
    Edits catalogue fields.  Changing `quantity` restocks or writes off free
    stock; allocation entries are never touched here.
    """

    def execute(self, cmd: UpdateProductCommand, uow: AbstractUnitOfWork) -> ProductDTO:
        with uow:
            _authorize(uow, Action.MANAGE_PRODUCTS, cmd.actor)
            _get_product_or_raise(uow, cmd.product_id)
            try:
                changes = _product_svc.validate_changes({
                    "name": cmd.name,
                    "reference": cmd.reference,
                    "category": cmd.category,
                    "description": cmd.description,
                    "quantity": cmd.quantity,
                    "price": cmd.price,
                })
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            if "reference" in changes:
                clash = uow.products.get_by_reference(changes["reference"])
                if clash is not None and clash.id != cmd.product_id:
                    raise ConflictError(
                        f"Product with reference '{changes['reference']}' already exists."
                    )
            product = uow.products.update_details(cmd.product_id, changes)
            if product is None:
                raise NotFoundError(f"Product {cmd.product_id} not found.")
            uow.commit()
            return _Assembler.product(product)


class DeleteProductUseCase:
    def execute(self, product_id: uuid.UUID, actor: Principal, uow: AbstractUnitOfWork) -> None:
        with uow:
            _authorize(uow, Action.MANAGE_PRODUCTS, actor)
            product = _get_product_or_raise(uow, product_id)
            if product.allocated_total > 0:
                raise ConflictError(
                    f"Product {product_id} is still reserved by "
                    f"{len(product.allocations)} project(s) and cannot be deleted."
                )
            uow.products.delete(product_id)
            uow.commit()


class GetProductUseCase:
    def execute(self, product_id: uuid.UUID, actor: Principal, uow: AbstractUnitOfWork) -> ProductDTO:
        with uow:
            _authorize(uow, Action.VIEW_PRODUCTS, actor)
            return _Assembler.product(_get_product_or_raise(uow, product_id))


class ListProductsUseCase:
    def execute(
        self, actor: Principal, uow: AbstractUnitOfWork, category: Optional[str] = None
    ) -> List[ProductDTO]:
        with uow:
            _authorize(uow, Action.VIEW_PRODUCTS, actor)
            products = uow.products.list_all()
            if category:
                products = [p for p in products if p.category == category]
            return [_Assembler.product(p) for p in sorted(products, key=lambda p: p.name)]


# ===========================================================================
# USE CASES — PROJECTS
# ===========================================================================

@dataclass
class CreateProjectCommand:
    name: str
    company: str
    description: str
    begin_date: date
    end_date: date
    client_id: uuid.UUID
    project_manager_id: uuid.UUID
    actor: Principal
    stock_manager_id: Optional[uuid.UUID] = None
    products: List[ProjectProduct] = field(default_factory=list)
    status: ProjectStatus = ProjectStatus.TO_DO


class CreateProjectUseCase:
    """
    Create a project and reserve its whole product list in one batch.
    Client, project manager and stock manager are told about the assignment.
    """

    def __init__(self, publisher: Optional[AbstractEventPublisher] = None):
        self._publisher = publisher

    def execute(self, cmd: CreateProjectCommand, uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            owner = {Relation.PROJECT_MANAGER} if cmd.project_manager_id == cmd.actor.id else set()
            _authorize(uow, Action.CREATE_PROJECT, cmd.actor, extra=owner)

            _require_member(uow, cmd.client_id, Role.CLIENT, "client")
            _require_member(uow, cmd.project_manager_id, Role.PROJECT_MANAGER, "project manager")
            if cmd.stock_manager_id is not None:
                _require_member(uow, cmd.stock_manager_id, Role.STOCK_MANAGER, "stock manager")

            try:
                products = _planner.normalize(cmd.products)
                project = _project_svc.create_project(
                    name=cmd.name,
                    company=cmd.company,
                    description=cmd.description,
                    begin_date=cmd.begin_date,
                    end_date=cmd.end_date,
                    client_id=cmd.client_id,
                    project_manager_id=cmd.project_manager_id,
                    stock_manager_id=cmd.stock_manager_id,
                    products=products,
                    status=cmd.status,
                )
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            _require_products(uow, project.products)

            mutations = ProjectAllocationCoordinator(uow).create(project)
            uow.commit()
            logger.info(
                "Project {} created with {} product line(s)", project.id, len(project.products)
            )
            dto = _Assembler.project(project)

        pending = [
            _project_assigned(project, project.client_id, Role.CLIENT),
            _project_assigned(project, project.project_manager_id, Role.PROJECT_MANAGER),
        ]
        if project.stock_manager_id is not None:
            pending.append(_project_assigned(project, project.stock_manager_id, Role.STOCK_MANAGER))
        pending.extend(_low_stock_alerts(project, mutations))
        NotificationDispatcher(uow, self._publisher).dispatch_all(pending)
        return dto


@dataclass
class UpdateProjectCommand:
    project_id: uuid.UUID
    actor: Principal
    name: Optional[str] = None
    company: Optional[str] = None
    description: Optional[str] = None
    begin_date: Optional[date] = None
    end_date: Optional[date] = None
    status: Optional[ProjectStatus] = None
    client_id: Optional[uuid.UUID] = None
    project_manager_id: Optional[uuid.UUID] = None
    stock_manager_id: Optional[uuid.UUID] = None
    products: Optional[List[ProjectProduct]] = None


class UpdateProjectUseCase:
    """
    Apply field updates and, when a product list is supplied, move the
    reservation from the old list to the new one as a single diff.
    """

    def __init__(self, publisher: Optional[AbstractEventPublisher] = None):
        self._publisher = publisher

    def execute(self, cmd: UpdateProjectCommand, uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            project = _get_project_or_raise(uow, cmd.project_id)
            _authorize(uow, Action.UPDATE_PROJECT, cmd.actor, project)

            if cmd.client_id is not None:
                _require_member(uow, cmd.client_id, Role.CLIENT, "client")
            if cmd.project_manager_id is not None:
                _require_member(uow, cmd.project_manager_id, Role.PROJECT_MANAGER, "project manager")
            if cmd.stock_manager_id is not None:
                _require_member(uow, cmd.stock_manager_id, Role.STOCK_MANAGER, "stock manager")

            before = {
                Role.CLIENT: project.client_id,
                Role.PROJECT_MANAGER: project.project_manager_id,
                Role.STOCK_MANAGER: project.stock_manager_id,
            }
            current = list(project.products)
            try:
                desired = _planner.normalize(cmd.products) if cmd.products is not None else None
                project = _project_svc.update_project(
                    project,
                    name=cmd.name,
                    company=cmd.company,
                    description=cmd.description,
                    begin_date=cmd.begin_date,
                    end_date=cmd.end_date,
                    status=cmd.status,
                    client_id=cmd.client_id,
                    project_manager_id=cmd.project_manager_id,
                    stock_manager_id=cmd.stock_manager_id,
                    products=desired,
                )
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            if desired is not None:
                _require_products(uow, desired)

            mutations = ProjectAllocationCoordinator(uow).update(project, current)
            uow.commit()
            dto = _Assembler.project(project)

        after = {
            Role.CLIENT: project.client_id,
            Role.PROJECT_MANAGER: project.project_manager_id,
            Role.STOCK_MANAGER: project.stock_manager_id,
        }
        pending = [
            _project_assigned(project, user_id, role)
            for role, user_id in after.items()
            if user_id is not None and user_id != before[role]
        ]
        pending.extend(_low_stock_alerts(project, mutations))
        NotificationDispatcher(uow, self._publisher).dispatch_all(pending)
        return dto


class DeleteProjectUseCase:
    """
    Delete a project, its tasks and its reservations.  Task files are removed
    from storage after the commit, best effort.
    """

    def __init__(self, file_store: Optional[AbstractFileStore] = None):
        self._file_store = file_store

    def execute(self, project_id: uuid.UUID, actor: Principal, uow: AbstractUnitOfWork) -> None:
        urls: List[str] = []
        with uow:
            project = _get_project_or_raise(uow, project_id)
            _authorize(uow, Action.DELETE_PROJECT, actor, project)

            for task in uow.tasks.list_for_project(project.id):
                urls.extend(_task_file_urls(task))
                if task.assigned_to is not None:
                    uow.users.remove_assigned_task(task.assigned_to, task.id)
                uow.tasks.delete(task.id)

            released = ProjectAllocationCoordinator(uow).delete(project)
            uow.commit()
            logger.info(
                "Project {} deleted, {} allocation(s) released", project_id, len(released)
            )
        _delete_files(self._file_store, urls)


class GetProjectUseCase:
    def execute(self, project_id: uuid.UUID, actor: Principal, uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            project = _get_project_or_raise(uow, project_id)
            _authorize(uow, Action.VIEW_PROJECT, actor, project)
            return _Assembler.project(project)


class ListProjectsUseCase:
    """Only the projects the caller may see."""

    def execute(self, actor: Principal, uow: AbstractUnitOfWork) -> List[ProjectDTO]:
        with uow:
            visible = [
                p for p in uow.projects.list_all()
                if _policy.permits(Action.VIEW_PROJECT, actor.role, _relations(uow, actor, p))
            ]
            return [_Assembler.project(p) for p in sorted(visible, key=lambda p: p.created_at, reverse=True)]


class VerifyProjectAllocationsUseCase:
    def execute(self, project_id: uuid.UUID, actor: Principal, uow: AbstractUnitOfWork) -> AllocationCheckDTO:
        with uow:
            project = _get_project_or_raise(uow, project_id)
            _authorize(uow, Action.VERIFY_ALLOCATIONS, actor, project)
            return InventoryLedger(uow).verify_allocations(project)


class GetProjectBoardUseCase:
    def execute(self, project_id: uuid.UUID, actor: Principal, uow: AbstractUnitOfWork) -> TaskBoardDTO:
        with uow:
            project = _get_project_or_raise(uow, project_id)
            _authorize(uow, Action.VIEW_PROJECT, actor, project)
            board = _workflow.group_by_status(uow.tasks.list_for_project(project.id))
            return TaskBoardDTO(
                project_id=str(project.id),
                columns={
                    status.value: [_Assembler.task(t, actor) for t in tasks]
                    for status, tasks in board.items()
                },
            )


# ===========================================================================
# USE CASES — TASKS
# ===========================================================================

@dataclass
class CreateTaskCommand:
    project_id: uuid.UUID
    name: str
    description: str
    begin_date: date
    end_date: date
    actor: Principal
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.TO_DO
    assigned_to: Optional[uuid.UUID] = None


class CreateTaskUseCase:
    def __init__(self, publisher: Optional[AbstractEventPublisher] = None):
        self._publisher = publisher

    def execute(self, cmd: CreateTaskCommand, uow: AbstractUnitOfWork) -> TaskDTO:
        with uow:
            project = _get_project_or_raise(uow, cmd.project_id)
            _authorize(uow, Action.CREATE_TASK, cmd.actor, project)
            if cmd.assigned_to is not None:
                _require_member(uow, cmd.assigned_to, Role.TECHNICIAN, "assignee")
            try:
                task = _workflow.create_task(
                    project=project,
                    name=cmd.name,
                    description=cmd.description,
                    begin_date=cmd.begin_date,
                    end_date=cmd.end_date,
                    priority=cmd.priority,
                    status=cmd.status,
                    assigned_to=cmd.assigned_to,
                    actor_id=cmd.actor.id,
                )
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            uow.tasks.add(task)
            uow.projects.add_task(project.id, task.id)
            if task.assigned_to is not None:
                uow.users.add_assigned_task(task.assigned_to, task.id)
            uow.commit()
            dto = _Assembler.task(task, cmd.actor)

        if task.assigned_to is not None and task.assigned_to != cmd.actor.id:
            NotificationDispatcher(uow, self._publisher).dispatch_all([
                PendingNotification(task.assigned_to, NotificationType.TASK_ASSIGNED, _task_event(task))
            ])
        return dto


class GetTaskUseCase:
    def execute(self, task_id: uuid.UUID, actor: Principal, uow: AbstractUnitOfWork) -> TaskDTO:
        with uow:
            task = _get_task_or_raise(uow, task_id)
            project = _get_project_or_raise(uow, task.project_id)
            _authorize(uow, Action.VIEW_TASK, actor, project, task)
            return _Assembler.task(task, actor)


@dataclass
class UpdateTaskCommand:
    """`assigned_to` left as UNSET keeps the assignee; None unassigns."""
    task_id: uuid.UUID
    actor: Principal
    name: Optional[str] = None
    description: Optional[str] = None
    begin_date: Optional[date] = None
    end_date: Optional[date] = None
    priority: Optional[TaskPriority] = None
    status: Optional[TaskStatus] = None
    assigned_to: Any = UNSET


class UpdateTaskUseCase:
    """
    Full task edit.  Reassignment moves the task id from the previous
    assignee's list to the new one's inside the same unit of work.
    """

    def __init__(self, publisher: Optional[AbstractEventPublisher] = None):
        self._publisher = publisher

    def execute(self, cmd: UpdateTaskCommand, uow: AbstractUnitOfWork) -> TaskDTO:
        with uow:
            task = _get_task_or_raise(uow, cmd.task_id)
            project = _get_project_or_raise(uow, task.project_id)
            _authorize(uow, Action.UPDATE_TASK, cmd.actor, project, task)
            if cmd.assigned_to is not UNSET and cmd.assigned_to is not None:
                _require_member(uow, cmd.assigned_to, Role.TECHNICIAN, "assignee")

            previous = task.assigned_to
            try:
                changes = _workflow.update(
                    task,
                    project,
                    actor_id=cmd.actor.id,
                    actor_role=cmd.actor.role,
                    name=cmd.name,
                    description=cmd.description,
                    begin_date=cmd.begin_date,
                    end_date=cmd.end_date,
                    priority=cmd.priority,
                    status=cmd.status,
                    assigned_to=cmd.assigned_to,
                )
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc

            if changes:
                uow.tasks.save(task)
                if "assigned_to" in changes:
                    if previous is not None:
                        uow.users.remove_assigned_task(previous, task.id)
                    if task.assigned_to is not None:
                        uow.users.add_assigned_task(task.assigned_to, task.id)
            uow.commit()
            dto = _Assembler.task(task, cmd.actor)

        pending: List[PendingNotification] = []
        reassigned = "assigned_to" in changes and task.assigned_to is not None
        if reassigned and task.assigned_to != cmd.actor.id:
            pending.append(
                PendingNotification(task.assigned_to, NotificationType.TASK_ASSIGNED, _task_event(task))
            )
        if changes:
            for user_id in _task_watchers(project, task, cmd.actor):
                if reassigned and user_id == task.assigned_to:
                    continue
                pending.append(
                    PendingNotification(
                        user_id,
                        NotificationType.TASK_UPDATED,
                        _task_event(task, fields=sorted(changes)),
                    )
                )
        NotificationDispatcher(uow, self._publisher).dispatch_all(pending)
        return dto


@dataclass
class MoveTaskCommand:
    task_id: uuid.UUID
    status: TaskStatus
    actor: Principal


class MoveTaskUseCase:
    """
    Board drag-and-drop: status only.  Same authorization family and the
    same evidence gate as a full update.
    """

    def __init__(self, publisher: Optional[AbstractEventPublisher] = None):
        self._publisher = publisher

    def execute(self, cmd: MoveTaskCommand, uow: AbstractUnitOfWork) -> TaskDTO:
        with uow:
            task = _get_task_or_raise(uow, cmd.task_id)
            project = _get_project_or_raise(uow, task.project_id)
            _authorize(uow, Action.MOVE_TASK, cmd.actor, project, task)
            try:
                changes = _workflow.move(task, cmd.status, cmd.actor.id, cmd.actor.role)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            if changes:
                uow.tasks.save(task)
            uow.commit()
            dto = _Assembler.task(task, cmd.actor)

        if changes:
            NotificationDispatcher(uow, self._publisher).dispatch_all([
                PendingNotification(
                    user_id,
                    NotificationType.TASK_UPDATED,
                    _task_event(task, status=task.status.value),
                )
                for user_id in _task_watchers(project, task, cmd.actor)
            ])
        return dto


class DeleteTaskUseCase:
    def __init__(self, file_store: Optional[AbstractFileStore] = None):
        self._file_store = file_store

    def execute(self, task_id: uuid.UUID, actor: Principal, uow: AbstractUnitOfWork) -> None:
        with uow:
            task = _get_task_or_raise(uow, task_id)
            project = _get_project_or_raise(uow, task.project_id)
            _authorize(uow, Action.DELETE_TASK, actor, project, task)
            urls = _task_file_urls(task)
            uow.projects.remove_task(project.id, task.id)
            if task.assigned_to is not None:
                uow.users.remove_assigned_task(task.assigned_to, task.id)
            uow.tasks.delete(task.id)
            uow.commit()
            logger.info("Task {} deleted from project {}", task_id, project.id)
        _delete_files(self._file_store, urls)


# ---------------------------------------------------------------------------
# Attachments and work evidence
# ---------------------------------------------------------------------------

@dataclass
class AddFilesCommand:
    task_id: uuid.UUID
    files: List[FileDescriptor]
    actor: Principal


@dataclass
class RemoveFilesCommand:
    task_id: uuid.UUID
    ids: List[uuid.UUID]
    actor: Principal


class AddAttachmentsUseCase:
    def execute(self, cmd: AddFilesCommand, uow: AbstractUnitOfWork) -> TaskDTO:
        with uow:
            task = _get_task_or_raise(uow, cmd.task_id)
            project = _get_project_or_raise(uow, task.project_id)
            _authorize(uow, Action.ADD_ATTACHMENT, cmd.actor, project, task)
            try:
                _workflow.add_attachments(task, cmd.files, cmd.actor.id)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            uow.tasks.save(task)
            uow.commit()
            return _Assembler.task(task, cmd.actor)


class RemoveAttachmentsUseCase:
    def __init__(self, file_store: Optional[AbstractFileStore] = None):
        self._file_store = file_store

    def execute(self, cmd: RemoveFilesCommand, uow: AbstractUnitOfWork) -> TaskDTO:
        with uow:
            task = _get_task_or_raise(uow, cmd.task_id)
            project = _get_project_or_raise(uow, task.project_id)
            _authorize(uow, Action.REMOVE_ATTACHMENT, cmd.actor, project, task)
            try:
                removed = _workflow.remove_attachments(task, cmd.ids, cmd.actor.id)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            uow.tasks.save(task)
            uow.commit()
            dto = _Assembler.task(task, cmd.actor)
        _delete_files(self._file_store, [a.url for a in removed])
        return dto


class AddWorkEvidenceUseCase:
    def execute(self, cmd: AddFilesCommand, uow: AbstractUnitOfWork) -> TaskDTO:
        with uow:
            task = _get_task_or_raise(uow, cmd.task_id)
            project = _get_project_or_raise(uow, task.project_id)
            _authorize(uow, Action.ADD_EVIDENCE, cmd.actor, project, task)
            try:
                _workflow.add_evidence(task, cmd.files, cmd.actor.id)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            uow.tasks.save(task)
            uow.commit()
            return _Assembler.task(task, cmd.actor)


class RemoveWorkEvidenceUseCase:
    """A technician may no longer withdraw evidence once the task is In Review or Completed."""

    def __init__(self, file_store: Optional[AbstractFileStore] = None):
        self._file_store = file_store

    def execute(self, cmd: RemoveFilesCommand, uow: AbstractUnitOfWork) -> TaskDTO:
        with uow:
            task = _get_task_or_raise(uow, cmd.task_id)
            project = _get_project_or_raise(uow, task.project_id)
            _authorize(uow, Action.REMOVE_EVIDENCE, cmd.actor, project, task)
            if cmd.actor.role == Role.TECHNICIAN and _workflow.evidence_locked(task):
                raise AuthorizationError(
                    f"Cannot delete work evidence when task is {task.status.value}."
                )
            try:
                removed = _workflow.remove_evidence(task, cmd.ids, cmd.actor.id)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            uow.tasks.save(task)
            uow.commit()
            dto = _Assembler.task(task, cmd.actor)
        _delete_files(self._file_store, [e.image_url for e in removed])
        return dto


# ---------------------------------------------------------------------------
# Comments and private messages
# ---------------------------------------------------------------------------

@dataclass
class AddCommentCommand:
    task_id: uuid.UUID
    content: str
    actor: Principal


class AddCommentUseCase:
    def __init__(self, publisher: Optional[AbstractEventPublisher] = None):
        self._publisher = publisher

    def execute(self, cmd: AddCommentCommand, uow: AbstractUnitOfWork) -> TaskDTO:
        with uow:
            task = _get_task_or_raise(uow, cmd.task_id)
            project = _get_project_or_raise(uow, task.project_id)
            _authorize(uow, Action.ADD_COMMENT, cmd.actor, project, task)
            try:
                comment = _workflow.add_comment(task, cmd.actor.id, cmd.content)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            uow.tasks.save(task)
            uow.commit()
            dto = _Assembler.task(task, cmd.actor)

        NotificationDispatcher(uow, self._publisher).dispatch_all([
            PendingNotification(
                user_id,
                NotificationType.COMMENT_ADDED,
                _task_event(task, commentId=str(comment.id), authorId=str(cmd.actor.id)),
            )
            for user_id in _task_watchers(project, task, cmd.actor)
        ])
        return dto


@dataclass
class DeleteTaskItemCommand:
    task_id: uuid.UUID
    item_id: uuid.UUID
    actor: Principal


class DeleteCommentUseCase:
    def execute(self, cmd: DeleteTaskItemCommand, uow: AbstractUnitOfWork) -> TaskDTO:
        with uow:
            task = _get_task_or_raise(uow, cmd.task_id)
            project = _get_project_or_raise(uow, task.project_id)
            comment = _workflow.find_comment(task, cmd.item_id)
            if comment is None:
                raise NotFoundError(f"Comment {cmd.item_id} not found.")
            author = {Relation.AUTHOR} if comment.user_id == cmd.actor.id else set()
            _authorize(uow, Action.DELETE_COMMENT, cmd.actor, project, task, extra=author)
            _workflow.remove_comment(task, comment, cmd.actor.id)
            uow.tasks.save(task)
            uow.commit()
            return _Assembler.task(task, cmd.actor)


@dataclass
class SendPrivateMessageCommand:
    task_id: uuid.UUID
    recipient_id: uuid.UUID
    content: str
    actor: Principal


class SendPrivateMessageUseCase:
    def execute(self, cmd: SendPrivateMessageCommand, uow: AbstractUnitOfWork) -> TaskDTO:
        with uow:
            task = _get_task_or_raise(uow, cmd.task_id)
            project = _get_project_or_raise(uow, task.project_id)
            _authorize(uow, Action.SEND_PRIVATE_MESSAGE, cmd.actor, project, task)
            _get_user_or_raise(uow, cmd.recipient_id)
            try:
                _workflow.add_private_message(task, cmd.actor.id, cmd.recipient_id, cmd.content)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            uow.tasks.save(task)
            uow.commit()
            return _Assembler.task(task, cmd.actor)


class DeletePrivateMessageUseCase:
    def execute(self, cmd: DeleteTaskItemCommand, uow: AbstractUnitOfWork) -> TaskDTO:
        with uow:
            task = _get_task_or_raise(uow, cmd.task_id)
            project = _get_project_or_raise(uow, task.project_id)
            message = _workflow.find_private_message(task, cmd.item_id)
            if message is None:
                raise NotFoundError(f"Message {cmd.item_id} not found.")
            correspondent = (
                {Relation.CORRESPONDENT}
                if cmd.actor.id in (message.sender_id, message.recipient_id)
                else set()
            )
            _authorize(
                uow, Action.DELETE_PRIVATE_MESSAGE, cmd.actor, project, task, extra=correspondent
            )
            _workflow.remove_private_message(task, message, cmd.actor.id)
            uow.tasks.save(task)
            uow.commit()
            return _Assembler.task(task, cmd.actor)
