"""
service.py

Service layer for the Field Operations Project & Inventory Management System.

Responsibilities
----------------
Each service class encapsulates the business rules for its domain.
Services receive and return domain model instances (from model.py).
No persistence is handled here — callers are responsible for storing
and retrieving models via the repositories of a unit of work.

Services
--------
- AccessPolicy            – single (action, role, relation) authorization table
- AllocationPlanner       – validates a project's product list and diffs it
                            against the current allocation into ledger steps
- ProductService          – product field validation
- ProjectService          – project field validation and team checks
- UserService             – user registration rules
- TaskWorkflowService     – status transitions, evidence gate, change log,
                            attachments, work evidence, comments, messages
- NotificationService     – notification construction, retention, paging

Design notes
------------
- UTC datetimes are used throughout.
- Business rule violations raise a ValueError with a descriptive message;
  the application layer translates them into its error taxonomy.
- Methods that would normally persist data return the mutated object(s)
  so the caller can hand them to a repository.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple

from model import (
    Attachment,
    ChangeLogEntry,
    Comment,
    FileDescriptor,
    FileKind,
    Notification,
    NotificationType,
    PrivateMessage,
    Product,
    Project,
    ProjectProduct,
    ProjectStatus,
    Role,
    Task,
    TaskPriority,
    TaskStatus,
    User,
    WorkEvidence,
)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Unset:
    """Marks a keyword argument the caller did not supply (None is a value)."""

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024

EVIDENCE_MIME_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})

# Once submitted, a technician may no longer withdraw proof of work.
EVIDENCE_LOCKED_STATUSES = frozenset({TaskStatus.IN_REVIEW, TaskStatus.COMPLETED})

EVIDENCE_GATE_BYPASS_ROLES = frozenset({Role.ADMIN, Role.PROJECT_MANAGER})

_PRIORITY_ORDER = {
    TaskPriority.URGENT: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
}


def _jsonable(value: Any) -> Any:
    """Render a field value the way it is recorded in a change-log diff."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


def _check_window(
    begin: Optional[date], end: Optional[date], label: str = "begin_date"
) -> None:
    if begin and end and begin > end:
        raise ValueError(f"{label} cannot be after end_date.")


# ---------------------------------------------------------------------------
# AccessPolicy
# ---------------------------------------------------------------------------

class Action(str, Enum):
    MANAGE_USERS = "manage users"
    VIEW_USERS = "view users"
    VIEW_PRODUCTS = "view products"
    MANAGE_PRODUCTS = "manage products"
    CREATE_PROJECT = "create project"
    VIEW_PROJECT = "view project"
    UPDATE_PROJECT = "update project"
    DELETE_PROJECT = "delete project"
    VERIFY_ALLOCATIONS = "verify allocations"
    CREATE_TASK = "create task"
    VIEW_TASK = "view task"
    UPDATE_TASK = "update task"
    MOVE_TASK = "move task"
    DELETE_TASK = "delete task"
    ADD_ATTACHMENT = "add attachment"
    REMOVE_ATTACHMENT = "remove attachment"
    ADD_EVIDENCE = "add work evidence"
    REMOVE_EVIDENCE = "remove work evidence"
    ADD_COMMENT = "add comment"
    DELETE_COMMENT = "delete comment"
    SEND_PRIVATE_MESSAGE = "send private message"
    DELETE_PRIVATE_MESSAGE = "delete private message"


class Relation(str, Enum):
    """
    How the acting user relates to the resource under consideration.
    ANY in a policy row means the role is allowed regardless of relation.
    """
    ANY = "any"
    PROJECT_MANAGER = "manages the project"
    CLIENT = "is the project client"
    STOCK_MANAGER = "is the project stock manager"
    ASSIGNEE = "is assigned to the task"
    TEAM_MEMBER = "works on a task of the project"
    AUTHOR = "authored the item"
    CORRESPONDENT = "sent or received the message"


_A = frozenset({Relation.ANY})
_OWNER = frozenset({Relation.PROJECT_MANAGER})
_PARTICIPANT_ROWS: Dict[Role, FrozenSet[Relation]] = {
    Role.ADMIN: _A,
    Role.PROJECT_MANAGER: _OWNER,
    Role.CLIENT: frozenset({Relation.CLIENT}),
    Role.STOCK_MANAGER: frozenset({Relation.STOCK_MANAGER}),
    Role.TECHNICIAN: frozenset({Relation.ASSIGNEE, Relation.TEAM_MEMBER}),
}

POLICY: Dict[Action, Dict[Role, FrozenSet[Relation]]] = {
    Action.MANAGE_USERS: {Role.ADMIN: _A},
    Action.VIEW_USERS: {Role.ADMIN: _A, Role.PROJECT_MANAGER: _A, Role.STOCK_MANAGER: _A},
    Action.VIEW_PRODUCTS: {Role.ADMIN: _A, Role.STOCK_MANAGER: _A, Role.PROJECT_MANAGER: _A},
    Action.MANAGE_PRODUCTS: {Role.ADMIN: _A, Role.STOCK_MANAGER: _A},
    # A project manager may only open projects they will manage themselves.
    Action.CREATE_PROJECT: {Role.ADMIN: _A, Role.PROJECT_MANAGER: _OWNER},
    Action.VIEW_PROJECT: _PARTICIPANT_ROWS,
    Action.UPDATE_PROJECT: {Role.ADMIN: _A, Role.PROJECT_MANAGER: _OWNER},
    Action.DELETE_PROJECT: {Role.ADMIN: _A},
    Action.VERIFY_ALLOCATIONS: {Role.ADMIN: _A, Role.STOCK_MANAGER: _A},
    Action.CREATE_TASK: {Role.ADMIN: _A, Role.PROJECT_MANAGER: _OWNER},
    Action.VIEW_TASK: _PARTICIPANT_ROWS,
    Action.UPDATE_TASK: {Role.ADMIN: _A, Role.PROJECT_MANAGER: _OWNER},
    Action.MOVE_TASK: {
        Role.ADMIN: _A,
        Role.PROJECT_MANAGER: _OWNER,
        Role.TECHNICIAN: frozenset({Relation.ASSIGNEE}),
    },
    Action.DELETE_TASK: {Role.ADMIN: _A, Role.PROJECT_MANAGER: _OWNER},
    Action.ADD_ATTACHMENT: {Role.ADMIN: _A, Role.PROJECT_MANAGER: _OWNER},
    Action.REMOVE_ATTACHMENT: {Role.ADMIN: _A, Role.PROJECT_MANAGER: _OWNER},
    Action.ADD_EVIDENCE: {
        Role.ADMIN: _A,
        Role.PROJECT_MANAGER: _OWNER,
        Role.TECHNICIAN: frozenset({Relation.ASSIGNEE}),
    },
    Action.REMOVE_EVIDENCE: {
        Role.ADMIN: _A,
        Role.PROJECT_MANAGER: _OWNER,
        Role.TECHNICIAN: frozenset({Relation.ASSIGNEE}),
    },
    Action.ADD_COMMENT: _PARTICIPANT_ROWS,
    Action.DELETE_COMMENT: {
        Role.ADMIN: _A,
        Role.PROJECT_MANAGER: frozenset({Relation.AUTHOR}),
        Role.CLIENT: frozenset({Relation.AUTHOR}),
        Role.STOCK_MANAGER: frozenset({Relation.AUTHOR}),
        Role.TECHNICIAN: frozenset({Relation.AUTHOR}),
    },
    Action.SEND_PRIVATE_MESSAGE: _PARTICIPANT_ROWS,
    Action.DELETE_PRIVATE_MESSAGE: {
        Role.ADMIN: _A,
        Role.PROJECT_MANAGER: frozenset({Relation.CORRESPONDENT}),
        Role.CLIENT: frozenset({Relation.CORRESPONDENT}),
        Role.STOCK_MANAGER: frozenset({Relation.CORRESPONDENT}),
        Role.TECHNICIAN: frozenset({Relation.CORRESPONDENT}),
    },
}


class AccessPolicy:
    """
    Evaluates the POLICY table.  A request is permitted when the actor's role
    has a row for the action and either the row contains ANY or the actor
    holds at least one of the listed relations to the resource.
    """

    def __init__(self, table: Mapping[Action, Mapping[Role, FrozenSet[Relation]]] = POLICY):
        self._table = table

    def permits(self, action: Action, role: Role, relations: Iterable[Relation] = ()) -> bool:
        allowed = self._table.get(action, {}).get(role)
        if not allowed:
            return False
        if Relation.ANY in allowed:
            return True
        return bool(allowed.intersection(relations))

    def relations_for(
        self,
        actor_id: uuid.UUID,
        project: Optional[Project] = None,
        task: Optional[Task] = None,
        team_member: bool = False,
    ) -> Set[Relation]:
        """Collect every relation the actor holds to the given project/task."""
        relations: Set[Relation] = set()
        if project is not None:
            if project.project_manager_id == actor_id:
                relations.add(Relation.PROJECT_MANAGER)
            if project.client_id == actor_id:
                relations.add(Relation.CLIENT)
            if project.stock_manager_id == actor_id:
                relations.add(Relation.STOCK_MANAGER)
        if task is not None and task.assigned_to == actor_id:
            relations.add(Relation.ASSIGNEE)
        if team_member:
            relations.add(Relation.TEAM_MEMBER)
        return relations


# ---------------------------------------------------------------------------
# AllocationPlanner
# ---------------------------------------------------------------------------

class StepKind(str, Enum):
    RESERVE = "reserve"
    ADJUST = "adjust"
    RELEASE = "release"


@dataclass(frozen=True)
class AllocationStep:
    kind: StepKind
    product_id: uuid.UUID
    quantity: int             # target allocation (RESERVE/ADJUST) or units to release
    previous_quantity: int = 0

    @property
    def grows(self) -> bool:
        """True when the step takes units out of free stock and may therefore fail."""
        if self.kind is StepKind.RESERVE:
            return True
        if self.kind is StepKind.ADJUST:
            return self.quantity > self.previous_quantity
        return False


@dataclass(frozen=True)
class AllocationPlan:
    steps: Tuple[AllocationStep, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.steps)

    def __iter__(self):
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)


class AllocationPlanner:
    """
    Turns a project's requested product list into ledger steps.

    Steps that may fail for lack of stock are ordered before steps that only
    return stock, so a failing plan never has to re-reserve units it already
    gave back.
    """

    def normalize(self, items: Iterable[ProjectProduct]) -> List[ProjectProduct]:
        """Validate a requested product list and return it as a fresh list."""
        seen: Set[uuid.UUID] = set()
        result: List[ProjectProduct] = []
        for item in items:
            if isinstance(item.quantity, bool) or not isinstance(item.quantity, int):
                raise ValueError(f"Quantity for product {item.product_id} must be an integer.")
            if item.quantity < 1:
                raise ValueError(
                    f"Quantity for product {item.product_id} must be at least 1."
                )
            if item.product_id in seen:
                raise ValueError(f"Product {item.product_id} is listed more than once.")
            seen.add(item.product_id)
            result.append(ProjectProduct(product_id=item.product_id, quantity=item.quantity))
        return result

    def plan(
        self,
        current: Iterable[ProjectProduct],
        desired: Iterable[ProjectProduct],
    ) -> AllocationPlan:
        held = {p.product_id: p.quantity for p in current}
        wanted = {p.product_id: p.quantity for p in desired}

        steps: List[AllocationStep] = []
        for product_id, qty in wanted.items():
            if product_id not in held:
                steps.append(AllocationStep(StepKind.RESERVE, product_id, qty, 0))
            elif held[product_id] != qty:
                steps.append(
                    AllocationStep(StepKind.ADJUST, product_id, qty, held[product_id])
                )
        for product_id, qty in held.items():
            if product_id not in wanted:
                steps.append(AllocationStep(StepKind.RELEASE, product_id, qty, qty))

        # stable sort: growing steps first, request order preserved within each group
        steps.sort(key=lambda s: 0 if s.grows else 1)
        return AllocationPlan(tuple(steps))


# ---------------------------------------------------------------------------
# ProductService
# ---------------------------------------------------------------------------

class ProductService:
    """Validates product fields.  Stock levels are never edited through allocations here."""

    def create_product(
        self,
        name: str,
        reference: str,
        category: str,
        quantity: int,
        price: float,
        description: str = "",
    ) -> Product:
        if not name.strip():
            raise ValueError("Product name must not be empty.")
        if not reference.strip():
            raise ValueError("Product reference must not be empty.")
        if quantity < 0:
            raise ValueError("Product quantity must be zero or greater.")
        if price < 0:
            raise ValueError("Product price must be zero or greater.")
        return Product(
            name=name.strip(),
            reference=reference.strip(),
            category=category,
            description=description,
            quantity=quantity,
            price=price,
            created_at=_utcnow(),
            updated_at=_utcnow(),
        )

    def validate_changes(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Check a partial update and return only the fields actually supplied."""
        cleaned = {k: v for k, v in changes.items() if v is not None}
        if "name" in cleaned and not cleaned["name"].strip():
            raise ValueError("Product name must not be empty.")
        if "reference" in cleaned and not cleaned["reference"].strip():
            raise ValueError("Product reference must not be empty.")
        if cleaned.get("quantity", 0) < 0:
            raise ValueError("Product quantity must be zero or greater.")
        if cleaned.get("price", 0) < 0:
            raise ValueError("Product price must be zero or greater.")
        return cleaned


# ---------------------------------------------------------------------------
# ProjectService
# ---------------------------------------------------------------------------

class ProjectService:
    """
    Builds and updates Project documents.  The product list is validated by
    the AllocationPlanner; this service only checks the surrounding fields.
    """

    def create_project(
        self,
        name: str,
        company: str,
        description: str,
        begin_date: date,
        end_date: date,
        client_id: uuid.UUID,
        project_manager_id: uuid.UUID,
        stock_manager_id: Optional[uuid.UUID],
        products: List[ProjectProduct],
        status: ProjectStatus = ProjectStatus.TO_DO,
    ) -> Project:
        """Create and return a new Project instance (unsaved)."""
        if not name.strip():
            raise ValueError("Project name must not be empty.")
        _check_window(begin_date, end_date)
        if products and stock_manager_id is None:
            raise ValueError("A stock manager is required when the project reserves products.")
        return Project(
            name=name.strip(),
            company=company,
            description=description,
            begin_date=begin_date,
            end_date=end_date,
            status=status,
            client_id=client_id,
            project_manager_id=project_manager_id,
            stock_manager_id=stock_manager_id,
            products=list(products),
            created_at=_utcnow(),
            updated_at=_utcnow(),
        )

    def update_project(
        self,
        project: Project,
        name: Optional[str] = None,
        company: Optional[str] = None,
        description: Optional[str] = None,
        begin_date: Optional[date] = None,
        end_date: Optional[date] = None,
        status: Optional[ProjectStatus] = None,
        client_id: Optional[uuid.UUID] = None,
        project_manager_id: Optional[uuid.UUID] = None,
        stock_manager_id: Optional[uuid.UUID] = None,
        products: Optional[List[ProjectProduct]] = None,
    ) -> Project:
        """Apply field-level updates to a project."""
        if name is not None:
            if not name.strip():
                raise ValueError("Project name must not be empty.")
            project.name = name.strip()
        if company is not None:
            project.company = company
        if description is not None:
            project.description = description
        if begin_date is not None:
            project.begin_date = begin_date
        if end_date is not None:
            project.end_date = end_date
        if status is not None:
            project.status = status
        if client_id is not None:
            project.client_id = client_id
        if project_manager_id is not None:
            project.project_manager_id = project_manager_id
        if stock_manager_id is not None:
            project.stock_manager_id = stock_manager_id
        if products is not None:
            project.products = list(products)
        _check_window(project.begin_date, project.end_date)
        if project.products and project.stock_manager_id is None:
            raise ValueError("A stock manager is required when the project reserves products.")
        project.updated_at = _utcnow()
        return project

    def check_member(self, user: User, expected: Role, label: str) -> None:
        if user.role != expected:
            raise ValueError(
                f"User {user.id} cannot be the {label}: role is '{user.role.value}', "
                f"expected '{expected.value}'."
            )


# ---------------------------------------------------------------------------
# UserService
# ---------------------------------------------------------------------------

class UserService:
    def create_user(self, name: str, email: str, role: Role, phone_number: str = "") -> User:
        if not name.strip():
            raise ValueError("User name must not be empty.")
        if "@" not in email:
            raise ValueError(f"'{email}' does not appear to be a valid email address.")
        return User(
            name=name.strip(),
            email=email.strip().lower(),
            role=role,
            phone_number=phone_number,
            created_at=_utcnow(),
        )


# ---------------------------------------------------------------------------
# TaskWorkflowService
# ---------------------------------------------------------------------------

class TaskWorkflowService:
    """
    State machine and audit trail for tasks.

    Every status may move to every other status.  The single guard is the
    evidence gate: a technician cannot move a task into IN_REVIEW while it
    carries no work evidence.  Each mutating method appends exactly one
    ChangeLogEntry (and none when nothing changed).
    """

    def __init__(self, max_file_size: int = DEFAULT_MAX_FILE_SIZE):
        self.max_file_size = max_file_size

    # -- change log ---------------------------------------------------------

    def record_change(
        self,
        task: Task,
        changes: Dict[str, Any],
        actor_id: uuid.UUID,
        message: str = "",
    ) -> Optional[ChangeLogEntry]:
        if not changes:
            return None
        now = _utcnow()
        entry = ChangeLogEntry(
            updated_by=actor_id,
            updated_at=now,
            changes=changes,
            message=message or "Task updated",
        )
        task.change_log.append(entry)
        task.last_updated_by = actor_id
        task.updated_at = now
        return entry

    # -- lifecycle ----------------------------------------------------------

    def create_task(
        self,
        project: Project,
        name: str,
        description: str,
        begin_date: date,
        end_date: date,
        priority: TaskPriority,
        status: TaskStatus,
        assigned_to: Optional[uuid.UUID],
        actor_id: uuid.UUID,
    ) -> Task:
        """Create and return a new Task (unsaved) with its `created` log entry."""
        if not name.strip():
            raise ValueError("Task name is required.")
        if not description.strip():
            raise ValueError("Description is required.")
        _check_window(begin_date, end_date)
        self._check_within_project(project, begin_date, end_date)
        if status == TaskStatus.IN_REVIEW:
            raise ValueError("A new task has no work evidence and cannot start in review.")
        task = Task(
            project_id=project.id,
            name=name.strip(),
            description=description,
            begin_date=begin_date,
            end_date=end_date,
            priority=priority,
            status=status,
            assigned_to=assigned_to,
            created_at=_utcnow(),
        )
        self.record_change(task, {"action": "created"}, actor_id, "Task created")
        return task

    def check_transition(self, task: Task, new_status: TaskStatus, actor_role: Role) -> None:
        """Raise ValueError when the evidence gate blocks the move."""
        if (
            new_status == TaskStatus.IN_REVIEW
            and actor_role not in EVIDENCE_GATE_BYPASS_ROLES
            and not task.work_evidence
        ):
            raise ValueError(
                "Work evidence is required before a task can be submitted for review."
            )

    def move(
        self,
        task: Task,
        new_status: TaskStatus,
        actor_id: uuid.UUID,
        actor_role: Role,
    ) -> Dict[str, Any]:
        """Status-only transition (board drag and drop)."""
        if new_status == task.status:
            return {}
        self.check_transition(task, new_status, actor_role)
        changes = {"status": {"from": task.status.value, "to": new_status.value}}
        task.status = new_status
        self.record_change(task, changes, actor_id, f"Task status updated to {new_status.value}")
        return changes

    def update(
        self,
        task: Task,
        project: Project,
        actor_id: uuid.UUID,
        actor_role: Role,
        name: Optional[str] = None,
        description: Optional[str] = None,
        begin_date: Optional[date] = None,
        end_date: Optional[date] = None,
        priority: Optional[TaskPriority] = None,
        status: Optional[TaskStatus] = None,
        assigned_to: Any = UNSET,
    ) -> Dict[str, Any]:
        """
        Apply a full field update and log one entry holding a {from, to} pair
        per field that actually changed.  Returns that diff ({} for a no-op).
        """
        if name is not None and not name.strip():
            raise ValueError("Task name must not be empty.")
        new_begin = begin_date or task.begin_date
        new_end = end_date or task.end_date
        _check_window(new_begin, new_end)
        if begin_date is not None or end_date is not None:
            self._check_within_project(project, new_begin, new_end)
        if status is not None and status != task.status:
            self.check_transition(task, status, actor_role)

        proposed = {
            "name": name.strip() if name is not None else None,
            "description": description,
            "begin_date": begin_date,
            "end_date": end_date,
            "priority": priority,
            "status": status,
        }
        changes: Dict[str, Any] = {}
        for field_name, value in proposed.items():
            if value is None:
                continue
            old = getattr(task, field_name)
            if value != old:
                changes[field_name] = {"from": _jsonable(old), "to": _jsonable(value)}
                setattr(task, field_name, value)
        if assigned_to is not UNSET and assigned_to != task.assigned_to:
            changes["assigned_to"] = {
                "from": _jsonable(task.assigned_to),
                "to": _jsonable(assigned_to),
            }
            task.assigned_to = assigned_to

        self.record_change(task, changes, actor_id)
        return changes

    # -- attachments --------------------------------------------------------

    def add_attachments(
        self, task: Task, files: List[FileDescriptor], actor_id: uuid.UUID
    ) -> List[Attachment]:
        if not files:
            raise ValueError("No files uploaded.")
        self._check_sizes(files)
        now = _utcnow()
        attachments = [
            Attachment(
                name=f.original_name or f.url.rsplit("/", 1)[-1],
                url=f.url,
                mimetype=f.mimetype,
                size=f.size,
                file_kind=self.classify(f.mimetype),
                uploaded_by=actor_id,
                uploaded_at=now,
            )
            for f in files
        ]
        task.attachments.extend(attachments)
        self.record_change(
            task,
            {"attachments": _list_change("added", [a.name for a in attachments])},
            actor_id,
        )
        return attachments

    def remove_attachments(
        self, task: Task, attachment_ids: List[uuid.UUID], actor_id: uuid.UUID
    ) -> List[Attachment]:
        removed = _pick(task.attachments, attachment_ids, "attachment")
        gone = {a.id for a in removed}
        task.attachments = [a for a in task.attachments if a.id not in gone]
        self.record_change(
            task,
            {"attachments": _list_change("removed", [a.name for a in removed])},
            actor_id,
        )
        return removed

    @staticmethod
    def classify(mimetype: str) -> FileKind:
        if mimetype.startswith("image/"):
            return FileKind.IMAGE
        if (
            mimetype == "application/pdf"
            or "word" in mimetype
            or "excel" in mimetype
            or "text" in mimetype
        ):
            return FileKind.DOCUMENT
        return FileKind.OTHER

    # -- work evidence ------------------------------------------------------

    def add_evidence(
        self, task: Task, files: List[FileDescriptor], actor_id: uuid.UUID
    ) -> List[WorkEvidence]:
        if not files:
            raise ValueError("No files uploaded.")
        wrong_type = [f.original_name or f.url for f in files if f.mimetype not in EVIDENCE_MIME_TYPES]
        if wrong_type:
            raise ValueError(
                f"Some files have invalid types: {', '.join(wrong_type)}. "
                "Only JPEG, PNG, GIF, and WebP images are allowed."
            )
        self._check_sizes(files)
        now = _utcnow()
        items = [
            WorkEvidence(
                image_url=f.url,
                original_name=f.original_name,
                mimetype=f.mimetype,
                size=f.size,
                uploaded_by=actor_id,
                uploaded_at=now,
            )
            for f in files
        ]
        task.work_evidence.extend(items)
        self.record_change(
            task,
            {"work_evidence": _list_change("added", [e.original_name for e in items])},
            actor_id,
        )
        return items

    def evidence_locked(self, task: Task) -> bool:
        return task.status in EVIDENCE_LOCKED_STATUSES

    def remove_evidence(
        self, task: Task, evidence_ids: List[uuid.UUID], actor_id: uuid.UUID
    ) -> List[WorkEvidence]:
        removed = _pick(task.work_evidence, evidence_ids, "evidence")
        gone = {e.id for e in removed}
        task.work_evidence = [e for e in task.work_evidence if e.id not in gone]
        self.record_change(
            task,
            {
                "work_evidence": _list_change(
                    "removed", [e.original_name or "unnamed file" for e in removed]
                )
            },
            actor_id,
        )
        return removed

    # -- comments and private messages --------------------------------------

    def add_comment(self, task: Task, actor_id: uuid.UUID, content: str) -> Comment:
        if not content or not content.strip():
            raise ValueError("Comment content is required.")
        comment = Comment(user_id=actor_id, content=content.strip(), created_at=_utcnow())
        task.comments.append(comment)
        self.record_change(task, {"comments": {"action": "added", "count": 1}}, actor_id)
        return comment

    def find_comment(self, task: Task, comment_id: uuid.UUID) -> Optional[Comment]:
        return next((c for c in task.comments if c.id == comment_id), None)

    def remove_comment(self, task: Task, comment: Comment, actor_id: uuid.UUID) -> None:
        task.comments = [c for c in task.comments if c.id != comment.id]
        self.record_change(task, {"comments": {"action": "removed", "count": 1}}, actor_id)

    def add_private_message(
        self,
        task: Task,
        sender_id: uuid.UUID,
        recipient_id: uuid.UUID,
        content: str,
    ) -> PrivateMessage:
        if not content or not content.strip():
            raise ValueError("Message content is required.")
        message = PrivateMessage(
            sender_id=sender_id,
            recipient_id=recipient_id,
            content=content.strip(),
            created_at=_utcnow(),
        )
        task.private_messages.append(message)
        self.record_change(
            task, {"private_messages": {"action": "added", "count": 1}}, sender_id
        )
        return message

    def find_private_message(
        self, task: Task, message_id: uuid.UUID
    ) -> Optional[PrivateMessage]:
        return next((m for m in task.private_messages if m.id == message_id), None)

    def remove_private_message(
        self, task: Task, message: PrivateMessage, actor_id: uuid.UUID
    ) -> None:
        task.private_messages = [m for m in task.private_messages if m.id != message.id]
        self.record_change(
            task, {"private_messages": {"action": "removed", "count": 1}}, actor_id
        )

    # -- board --------------------------------------------------------------

    def group_by_status(self, tasks: List[Task]) -> Dict[TaskStatus, List[Task]]:
        """Board columns, each sorted by priority then end date."""
        ordered = sorted(
            tasks,
            key=lambda t: (_PRIORITY_ORDER[t.priority], t.end_date or date.max),
        )
        board: Dict[TaskStatus, List[Task]] = {s: [] for s in TaskStatus}
        for task in ordered:
            board[task.status].append(task)
        return board

    # -- internals ----------------------------------------------------------

    def _check_sizes(self, files: List[FileDescriptor]) -> None:
        too_big = [f.original_name or f.url for f in files if f.size > self.max_file_size]
        if too_big:
            raise ValueError(
                f"Some files exceed the maximum size of "
                f"{self.max_file_size // (1024 * 1024)}MB: {', '.join(too_big)}"
            )

    @staticmethod
    def _check_within_project(
        project: Project, begin: Optional[date], end: Optional[date]
    ) -> None:
        if project.begin_date and begin and begin < project.begin_date:
            raise ValueError("Task dates must be within project date range.")
        if project.end_date and end and end > project.end_date:
            raise ValueError("Task dates must be within project date range.")


def _list_change(action: str, names: List[str]) -> Dict[str, Any]:
    return {"action": action, "count": len(names), "names": names}


def _pick(items: list, ids: List[uuid.UUID], label: str) -> list:
    if not ids:
        raise ValueError(f"No {label} IDs provided.")
    wanted = set(ids)
    found = [item for item in items if item.id in wanted]
    missing = wanted - {item.id for item in found}
    if missing:
        raise ValueError(
            f"Some {label} IDs were not found: {', '.join(sorted(str(m) for m in missing))}"
        )
    return found


# ---------------------------------------------------------------------------
# NotificationService
# ---------------------------------------------------------------------------

class NotificationService:
    """
    Builds Notification rows and normalises paging requests.
    Rows carry their own expiry so any store can honour the retention window.
    """

    def __init__(self, retention: timedelta = timedelta(days=30), max_page_size: int = 50):
        self.retention = retention
        self.max_page_size = max_page_size

    def build(
        self,
        to: uuid.UUID,
        notification_type: NotificationType,
        data: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Notification:
        created = now or _utcnow()
        return Notification(
            to=to,
            type=notification_type,
            data=dict(data),
            read=False,
            created_at=created,
            expires_at=created + self.retention,
        )

    def page_window(self, page: int, limit: int) -> Tuple[int, int, int]:
        """Return (page, limit, offset) with the limit capped server-side."""
        page = max(1, int(page))
        limit = min(max(1, int(limit)), self.max_page_size)
        return page, limit, (page - 1) * limit

    @staticmethod
    def page_count(total: int, limit: int) -> int:
        return math.ceil(total / limit) if limit else 0
