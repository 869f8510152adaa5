"""
model.py

Domain models for the Field Operations Project & Inventory Management System.

Entities
--------
- User
- Product
- Allocation
- Project
- ProjectProduct
- Task
- Attachment
- WorkEvidence
- Comment
- PrivateMessage
- ChangeLogEntry
- Notification

Value objects
-------------
- Principal        – the authenticated actor handed over by the auth layer
- FileDescriptor   – an already-stored upload handed over by file storage
- StockMutation    – outcome of one atomic stock operator

All models use Python dataclasses for clean, framework-agnostic definitions.
UUID primary keys are used throughout for portability.
Timestamps are always stored in UTC.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Role(str, Enum):
    """System-wide role of a user account."""
    ADMIN = "admin"
    PROJECT_MANAGER = "project manager"
    STOCK_MANAGER = "stock manager"
    CLIENT = "client"
    TECHNICIAN = "technician"


class ProjectStatus(str, Enum):
    TO_DO = "To Do"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class TaskStatus(str, Enum):
    """
    Board column of a task.  Every status may move to every other status;
    the only guard is the work-evidence gate on IN_REVIEW for technicians.
    """
    TO_DO = "To Do"
    IN_PROGRESS = "In Progress"
    IN_REVIEW = "In Review"
    COMPLETED = "Completed"


class TaskPriority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    URGENT = "Urgent"


class FileKind(str, Enum):
    """Coarse classification of an attachment, derived from its mimetype."""
    IMAGE = "image"
    DOCUMENT = "document"
    OTHER = "other"


class NotificationType(str, Enum):
    """Category of a user notification event."""
    PROJECT_ASSIGNED = "project_assigned"
    TASK_ASSIGNED = "task_assigned"
    TASK_UPDATED = "task_updated"
    COMMENT_ADDED = "comment_added"
    PRODUCT_LOW_STOCK = "product_low_stock"


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Principal:
    """An authenticated caller, as resolved by the auth middleware."""
    id: uuid.UUID
    role: Role


@dataclass(frozen=True)
class FileDescriptor:
    """
    A file that has already been written by the upload layer.
    The core never touches the bytes; it only records and later deletes
    the file by url.
    """
    url: str
    mimetype: str
    size: int
    original_name: str = ""


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@dataclass
class User:
    """
    A person holding one system-wide role.

    `assigned_tasks` is a reference list maintained exclusively through the
    repository's atomic push/pull operators; saving a User never rewrites it.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    email: str = ""
    role: Role = Role.TECHNICIAN
    phone_number: str = ""
    assigned_tasks: List[uuid.UUID] = field(default_factory=list)   # FK → Task.id
    created_at: datetime = field(default_factory=_now)


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------


@dataclass
class Allocation:
    """Units of a product currently reserved for one project."""
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)     # FK → Project.id
    allocated_quantity: int = 0


@dataclass
class Product:
    """
    A stock-keeping unit.

    `quantity` is the free (unreserved) stock.  Reserved units live in
    `allocations`, one entry per project currently holding stock, so that
    quantity + sum(allocated_quantity) is the total stock owned.
    Allocation entries are written only by the inventory ledger.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    reference: str = ""
    category: str = ""
    description: str = ""
    quantity: int = 0
    price: float = 0.0
    allocations: List[Allocation] = field(default_factory=list)

    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def allocated_total(self) -> int:
        return sum(a.allocated_quantity for a in self.allocations)

    @property
    def total_owned(self) -> int:
        return self.quantity + self.allocated_total

    def allocation_for(self, project_id: uuid.UUID) -> Optional[Allocation]:
        return next((a for a in self.allocations if a.project_id == project_id), None)


@dataclass(frozen=True)
class StockMutation:
    """
    Result of one atomic stock operator: the product as it reads after the
    update, plus the project's allocation before and after.
    """
    product: Product
    previous_allocated: int
    allocated: int

    @property
    def delta(self) -> int:
        """Units moved from free stock into the allocation (negative = released)."""
        return self.allocated - self.previous_allocated


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


@dataclass
class ProjectProduct:
    """One line of a project's desired allocation."""
    product_id: uuid.UUID = field(default_factory=uuid.uuid4)     # FK → Product.id
    quantity: int = 1


@dataclass
class Project:
    """
    A customer engagement.  `products` is the project's current desired
    allocation and is mirrored by the ledger's allocation entries.
    `tasks` is maintained through atomic push/pull operators only.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    company: str = ""
    description: str = ""

    begin_date: Optional[date] = None
    end_date: Optional[date] = None
    status: ProjectStatus = ProjectStatus.TO_DO

    client_id: Optional[uuid.UUID] = None              # FK → User.id
    project_manager_id: Optional[uuid.UUID] = None     # FK → User.id
    stock_manager_id: Optional[uuid.UUID] = None       # FK → User.id; required when products is non-empty

    products: List[ProjectProduct] = field(default_factory=list)
    tasks: List[uuid.UUID] = field(default_factory=list)           # FK → Task.id

    version: int = 0
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@dataclass
class Attachment:
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    url: str = ""
    mimetype: str = ""
    size: int = 0
    file_kind: FileKind = FileKind.OTHER
    uploaded_by: Optional[uuid.UUID] = None            # FK → User.id
    uploaded_at: datetime = field(default_factory=_now)


@dataclass
class WorkEvidence:
    """A proof-of-work image uploaded against a task."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    image_url: str = ""
    original_name: str = ""
    mimetype: str = ""
    size: int = 0
    uploaded_by: Optional[uuid.UUID] = None            # FK → User.id
    uploaded_at: datetime = field(default_factory=_now)


@dataclass
class Comment:
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    user_id: Optional[uuid.UUID] = None                # FK → User.id
    content: str = ""
    created_at: datetime = field(default_factory=_now)


@dataclass
class PrivateMessage:
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    sender_id: Optional[uuid.UUID] = None              # FK → User.id
    recipient_id: Optional[uuid.UUID] = None           # FK → User.id
    content: str = ""
    created_at: datetime = field(default_factory=_now)


@dataclass
class ChangeLogEntry:
    """
    Immutable record of one mutating operation on a task.

    `changes` maps a field name either to {"from": old, "to": new} or, for
    list fields, to {"action": "added" | "removed", "count": n, "names": [...]}.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    updated_by: Optional[uuid.UUID] = None             # FK → User.id
    updated_at: datetime = field(default_factory=_now)
    changes: Dict[str, Any] = field(default_factory=dict)
    message: str = ""


@dataclass
class Task:
    """
    A unit of field work inside a project.

    `change_log` is append-only; every mutating operation adds exactly one
    entry and stamps `last_updated_by`.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)     # FK → Project.id
    name: str = ""
    description: str = ""
    begin_date: Optional[date] = None
    end_date: Optional[date] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.TO_DO
    assigned_to: Optional[uuid.UUID] = None            # FK → User.id (technician)

    comments: List[Comment] = field(default_factory=list)
    private_messages: List[PrivateMessage] = field(default_factory=list)
    attachments: List[Attachment] = field(default_factory=list)
    work_evidence: List[WorkEvidence] = field(default_factory=list)
    change_log: List[ChangeLogEntry] = field(default_factory=list)
    last_updated_by: Optional[uuid.UUID] = None        # FK → User.id

    version: int = 0
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


@dataclass
class Notification:
    """
    A persisted message for one user.  Rows expire automatically once
    `expires_at` has passed (fixed retention window from creation).
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    to: uuid.UUID = field(default_factory=uuid.uuid4)  # FK → User.id
    type: NotificationType = NotificationType.TASK_UPDATED
    data: Dict[str, Any] = field(default_factory=dict)
    read: bool = False
    created_at: datetime = field(default_factory=_now)
    expires_at: Optional[datetime] = None
