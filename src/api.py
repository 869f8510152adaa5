"""
api.py

REST + WebSocket API layer for the Field Operations Project & Inventory
Management System.

Framework : FastAPI
Auth      : Bearer JWT.  The get_current_principal dependency decodes the
            token into a Principal(id, role); the application layer trusts
            it and makes every authorization decision from the access
            policy table.  Token issuance belongs to the identity provider.

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /users                         — user directory (admin registration)
  ├── /products                      — stock catalogue
  ├── /projects                      — project CRUD with stock reservation
  │   ├── /{project_id}/tasks        — task board grouped by status
  │   └── /{project_id}/allocations/verify — ledger integrity check
  ├── /tasks                         — task CRUD and workflow
  │   ├── /{task_id}/position        — status-only move (board drag and drop)
  │   ├── /{task_id}/attachments     — documents attached by managers
  │   ├── /{task_id}/evidence        — proof-of-work images
  │   ├── /{task_id}/comments        — discussion thread
  │   └── /{task_id}/private-messages — one-to-one messages
  └── /notifications                 — current-user inbox
  WebSocket
  └── /ws/notifications?token=...    — live notification push

Error handling
--------------
  ValidationError    → 400
  (missing/bad token)→ 401
  AuthorizationError → 403
  NotFoundError      → 404
  ConflictError      → 409  (insufficient stock adds "available")
  IntegrityError     → 500
  ApplicationError   → 422
  Request schema     → 422 (FastAPI default)

Response envelope
-----------------
  Success  : { "data": <payload> }
  Error    : { "detail": "<message>" }

Running
-------
  uvicorn api:app --reload
"""

from __future__ import annotations

import dataclasses
import uuid
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Path, Query, Request, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi_mcp import FastApiMCP
from loguru import logger
from pydantic import BaseModel, EmailStr, Field, field_validator

from application import (
    # Exceptions
    ApplicationError,
    AuthorizationError,
    ConflictError,
    IntegrityError,
    NotFoundError,
    ValidationError,
    # Ports
    AbstractFileStore,
    AbstractUnitOfWork,
    NOTIFICATION_TOPIC,
    NotificationDispatcher,
    # Use-case commands
    AddCommentCommand,
    AddFilesCommand,
    CreateProductCommand,
    CreateProjectCommand,
    CreateTaskCommand,
    DeleteTaskItemCommand,
    MoveTaskCommand,
    RegisterUserCommand,
    RemoveFilesCommand,
    SendPrivateMessageCommand,
    UpdateProductCommand,
    UpdateProjectCommand,
    UpdateTaskCommand,
    # Use-case classes
    AddAttachmentsUseCase,
    AddCommentUseCase,
    AddWorkEvidenceUseCase,
    CreateProductUseCase,
    CreateProjectUseCase,
    CreateTaskUseCase,
    DeleteCommentUseCase,
    DeletePrivateMessageUseCase,
    DeleteProductUseCase,
    DeleteProjectUseCase,
    DeleteTaskUseCase,
    EnsureAdminUseCase,
    GetProductUseCase,
    GetProjectBoardUseCase,
    GetProjectUseCase,
    GetTaskUseCase,
    GetUserUseCase,
    ListProductsUseCase,
    ListProjectsUseCase,
    ListUsersUseCase,
    MoveTaskUseCase,
    RegisterUserUseCase,
    RemoveAttachmentsUseCase,
    RemoveWorkEvidenceUseCase,
    SendPrivateMessageUseCase,
    UpdateProductUseCase,
    UpdateProjectUseCase,
    UpdateTaskUseCase,
    VerifyProjectAllocationsUseCase,
)
from auth import InvalidTokenError, create_access_token, decode_access_token
from config import settings
from infrastructure import InMemoryDatabase, InMemoryEventBus, InMemoryUnitOfWork, LocalFileStore, _db
from model import FileDescriptor, Principal, ProjectProduct, ProjectStatus, Role, TaskPriority, TaskStatus
from realtime import NotificationHub
from service import UNSET


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

async def validation_handler(request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


async def authorization_handler(request, exc: AuthorizationError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


async def not_found_handler(request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def conflict_handler(request, exc: ConflictError):
    content: Dict[str, Any] = {"detail": str(exc)}
    if exc.available is not None:
        content["available"] = exc.available
    return JSONResponse(status_code=409, content=content)


async def integrity_handler(request, exc: IntegrityError):
    logger.critical("Integrity error on {} {}: {}", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


async def application_error_handler(request, exc: ApplicationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

_bearer = HTTPBearer(auto_error=False)


def get_uow(request: Request) -> AbstractUnitOfWork:
    """A fresh Unit of Work over the app's in-memory database."""
    return InMemoryUnitOfWork(request.app.state.db)


def get_event_bus(request: Request) -> InMemoryEventBus:
    return request.app.state.bus


def get_file_store(request: Request) -> AbstractFileStore:
    return request.app.state.file_store


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> Principal:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return decode_access_token(credentials.credentials).principal
    except InvalidTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


# ---------------------------------------------------------------------------
# Envelope helper
# ---------------------------------------------------------------------------

def _ok(data: Any) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    if dataclasses.is_dataclass(data):
        return {"data": dataclasses.asdict(data)}
    if isinstance(data, list):
        return {
            "data": [
                dataclasses.asdict(item) if dataclasses.is_dataclass(item) else item
                for item in data
            ]
        }
    return {"data": data}


def _one_of(enum_cls, value: str, field_name: str) -> str:
    valid = {e.value for e in enum_cls}
    if value not in valid:
        raise ValueError(f"{field_name} must be one of: {sorted(valid)}")
    return value


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
# ===========================================================================

# ---------------------------------------------------------------------------
# User schemas
# ---------------------------------------------------------------------------

class RegisterUserRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    role: str = Field(..., description="One of: admin, project manager, stock manager, client, technician")
    phone_number: str = Field(default="")

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        return _one_of(Role, v, "role")


# ---------------------------------------------------------------------------
# Product schemas
# ---------------------------------------------------------------------------

class CreateProductRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    reference: str = Field(..., min_length=1, max_length=100)
    category: str = Field(default="")
    description: str = Field(default="")
    quantity: int = Field(..., ge=0)
    price: float = Field(..., ge=0)


class UpdateProductRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    reference: Optional[str] = Field(default=None, min_length=1, max_length=100)
    category: Optional[str] = None
    description: Optional[str] = None
    quantity: Optional[int] = Field(default=None, ge=0)
    price: Optional[float] = Field(default=None, ge=0)


# ---------------------------------------------------------------------------
# Project schemas
# ---------------------------------------------------------------------------

class ProjectProductRequest(BaseModel):
    product_id: uuid.UUID
    quantity: int = Field(default=1, description="Units to reserve; must be at least 1.")

    def to_domain(self) -> ProjectProduct:
        return ProjectProduct(product_id=self.product_id, quantity=self.quantity)


class CreateProjectRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    company: str = Field(default="")
    description: str = Field(default="")
    begin_date: date
    end_date: date
    client_id: uuid.UUID
    project_manager_id: uuid.UUID
    stock_manager_id: Optional[uuid.UUID] = None
    products: List[ProjectProductRequest] = Field(default_factory=list)
    status: str = Field(default=ProjectStatus.TO_DO.value)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        return _one_of(ProjectStatus, v, "status")


class UpdateProjectRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    company: Optional[str] = None
    description: Optional[str] = None
    begin_date: Optional[date] = None
    end_date: Optional[date] = None
    status: Optional[str] = None
    client_id: Optional[uuid.UUID] = None
    project_manager_id: Optional[uuid.UUID] = None
    stock_manager_id: Optional[uuid.UUID] = None
    products: Optional[List[ProjectProductRequest]] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: Optional[str]) -> Optional[str]:
        return _one_of(ProjectStatus, v, "status") if v is not None else v


# ---------------------------------------------------------------------------
# Task schemas
# ---------------------------------------------------------------------------

class CreateTaskRequest(BaseModel):
    project_id: uuid.UUID
    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    begin_date: date
    end_date: date
    priority: str = Field(default=TaskPriority.MEDIUM.value)
    status: str = Field(default=TaskStatus.TO_DO.value)
    assigned_to: Optional[uuid.UUID] = None

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, v: str) -> str:
        return _one_of(TaskPriority, v, "priority")

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        return _one_of(TaskStatus, v, "status")


class UpdateTaskRequest(BaseModel):
    """Send `assigned_to: null` to unassign; omit it to keep the assignee."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    begin_date: Optional[date] = None
    end_date: Optional[date] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    assigned_to: Optional[uuid.UUID] = None

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, v: Optional[str]) -> Optional[str]:
        return _one_of(TaskPriority, v, "priority") if v is not None else v

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: Optional[str]) -> Optional[str]:
        return _one_of(TaskStatus, v, "status") if v is not None else v


class MoveTaskRequest(BaseModel):
    status: str

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        return _one_of(TaskStatus, v, "status")


class FileDescriptorRequest(BaseModel):
    url: str = Field(..., min_length=1)
    mimetype: str = Field(..., min_length=1)
    size: int = Field(..., ge=0)
    original_name: str = Field(default="")

    def to_domain(self) -> FileDescriptor:
        return FileDescriptor(
            url=self.url, mimetype=self.mimetype, size=self.size, original_name=self.original_name
        )


class AddFilesRequest(BaseModel):
    files: List[FileDescriptorRequest]


class RemoveFilesRequest(BaseModel):
    ids: List[uuid.UUID]


class CommentRequest(BaseModel):
    content: str = Field(..., max_length=5000)


class PrivateMessageRequest(BaseModel):
    recipient_id: uuid.UUID
    content: str = Field(..., max_length=5000)


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

user_router = APIRouter(prefix="/users", tags=["Users"])


@user_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Register a new user",
)
def register_user(
    body: RegisterUserRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    """Admin only.  Email addresses are unique."""
    cmd = RegisterUserCommand(
        name=body.name,
        email=str(body.email),
        role=Role(body.role),
        phone_number=body.phone_number,
        actor=principal,
    )
    return _ok(RegisterUserUseCase().execute(cmd, uow))


@user_router.get("", summary="List users, optionally filtered by role")
def list_users(
    role: Optional[str] = Query(default=None),
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    try:
        role_filter = Role(role) if role else None
    except ValueError as exc:
        raise ValidationError(f"Unknown role '{role}'.") from exc
    return _ok(ListUsersUseCase().execute(principal, uow, role=role_filter))


@user_router.get("/me", summary="The authenticated user")
def get_me(
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    return _ok(GetUserUseCase().execute(principal.id, principal, uow))


@user_router.get("/{user_id}", summary="Get a user by ID")
def get_user(
    user_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    return _ok(GetUserUseCase().execute(user_id, principal, uow))


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------

product_router = APIRouter(prefix="/products", tags=["Products"])


@product_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Add a product to the catalogue",
)
def create_product(
    body: CreateProductRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    cmd = CreateProductCommand(
        name=body.name,
        reference=body.reference,
        category=body.category,
        description=body.description,
        quantity=body.quantity,
        price=body.price,
        actor=principal,
    )
    return _ok(CreateProductUseCase().execute(cmd, uow))


@product_router.get("", summary="List products")
def list_products(
    category: Optional[str] = Query(default=None),
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    return _ok(ListProductsUseCase().execute(principal, uow, category=category))


@product_router.get("/{product_id}", summary="Get a product with its allocations")
def get_product(
    product_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    return _ok(GetProductUseCase().execute(product_id, principal, uow))


@product_router.patch("/{product_id}", summary="Edit catalogue fields or restock")
def update_product(
    body: UpdateProductRequest,
    product_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    """
    `quantity` is the free stock.  Changing it restocks or writes off units;
    reservations held by projects are not affected.
    """
    cmd = UpdateProductCommand(product_id=product_id, actor=principal, **body.model_dump())
    return _ok(UpdateProductUseCase().execute(cmd, uow))


@product_router.delete(
    "/{product_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a product that no project has reserved",
)
def delete_product(
    product_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    DeleteProductUseCase().execute(product_id, principal, uow)


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

project_router = APIRouter(prefix="/projects", tags=["Projects"])


@project_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create a project and reserve its products",
)
def create_project(
    body: CreateProjectRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
    bus: InMemoryEventBus = Depends(get_event_bus),
    principal: Principal = Depends(get_current_principal),
):
    """
    The whole product list is reserved in one all-or-nothing batch.  If any
    line cannot be served the request fails with 409 and no stock moves.
    """
    cmd = CreateProjectCommand(
        name=body.name,
        company=body.company,
        description=body.description,
        begin_date=body.begin_date,
        end_date=body.end_date,
        client_id=body.client_id,
        project_manager_id=body.project_manager_id,
        stock_manager_id=body.stock_manager_id,
        products=[p.to_domain() for p in body.products],
        status=ProjectStatus(body.status),
        actor=principal,
    )
    return _ok(CreateProjectUseCase(bus).execute(cmd, uow))


@project_router.get("", summary="List the projects visible to the caller")
def list_projects(
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    return _ok(ListProjectsUseCase().execute(principal, uow))


@project_router.get("/{project_id}", summary="Get a project by ID")
def get_project(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    return _ok(GetProjectUseCase().execute(project_id, principal, uow))


@project_router.patch("/{project_id}", summary="Update a project and its reserved products")
def update_project(
    body: UpdateProjectRequest,
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    bus: InMemoryEventBus = Depends(get_event_bus),
    principal: Principal = Depends(get_current_principal),
):
    cmd = UpdateProjectCommand(
        project_id=project_id,
        actor=principal,
        name=body.name,
        company=body.company,
        description=body.description,
        begin_date=body.begin_date,
        end_date=body.end_date,
        status=ProjectStatus(body.status) if body.status else None,
        client_id=body.client_id,
        project_manager_id=body.project_manager_id,
        stock_manager_id=body.stock_manager_id,
        products=[p.to_domain() for p in body.products] if body.products is not None else None,
    )
    return _ok(UpdateProjectUseCase(bus).execute(cmd, uow))


@project_router.delete(
    "/{project_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a project, its tasks and its reservations",
)
def delete_project(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    file_store: AbstractFileStore = Depends(get_file_store),
    principal: Principal = Depends(get_current_principal),
):
    DeleteProjectUseCase(file_store).execute(project_id, principal, uow)


@project_router.get("/{project_id}/tasks", summary="Task board grouped by status")
def get_project_board(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    return _ok(GetProjectBoardUseCase().execute(project_id, principal, uow))


@project_router.get(
    "/{project_id}/allocations/verify",
    summary="Check the project's product list against the stock ledger",
)
def verify_allocations(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    return _ok(VerifyProjectAllocationsUseCase().execute(project_id, principal, uow))


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

task_router = APIRouter(prefix="/tasks", tags=["Tasks"])


@task_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create a task inside a project",
)
def create_task(
    body: CreateTaskRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
    bus: InMemoryEventBus = Depends(get_event_bus),
    principal: Principal = Depends(get_current_principal),
):
    cmd = CreateTaskCommand(
        project_id=body.project_id,
        name=body.name,
        description=body.description,
        begin_date=body.begin_date,
        end_date=body.end_date,
        priority=TaskPriority(body.priority),
        status=TaskStatus(body.status),
        assigned_to=body.assigned_to,
        actor=principal,
    )
    return _ok(CreateTaskUseCase(bus).execute(cmd, uow))


@task_router.get("/{task_id}", summary="Get a task with its history")
def get_task(
    task_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    return _ok(GetTaskUseCase().execute(task_id, principal, uow))


@task_router.put("/{task_id}", summary="Edit task fields, status and assignee")
def update_task(
    body: UpdateTaskRequest,
    task_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    bus: InMemoryEventBus = Depends(get_event_bus),
    principal: Principal = Depends(get_current_principal),
):
    cmd = UpdateTaskCommand(
        task_id=task_id,
        actor=principal,
        name=body.name,
        description=body.description,
        begin_date=body.begin_date,
        end_date=body.end_date,
        priority=TaskPriority(body.priority) if body.priority else None,
        status=TaskStatus(body.status) if body.status else None,
        assigned_to=body.assigned_to if "assigned_to" in body.model_fields_set else UNSET,
    )
    return _ok(UpdateTaskUseCase(bus).execute(cmd, uow))


@task_router.patch("/{task_id}/position", summary="Move a task to another board column")
def move_task(
    body: MoveTaskRequest,
    task_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    bus: InMemoryEventBus = Depends(get_event_bus),
    principal: Principal = Depends(get_current_principal),
):
    """
    Status only.  Allowed for admins, the owning project manager and the
    assigned technician; the work-evidence rule for In Review still applies.
    """
    cmd = MoveTaskCommand(task_id=task_id, status=TaskStatus(body.status), actor=principal)
    return _ok(MoveTaskUseCase(bus).execute(cmd, uow))


@task_router.delete(
    "/{task_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a task and its files",
)
def delete_task(
    task_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    file_store: AbstractFileStore = Depends(get_file_store),
    principal: Principal = Depends(get_current_principal),
):
    DeleteTaskUseCase(file_store).execute(task_id, principal, uow)


@task_router.post("/{task_id}/attachments", summary="Attach uploaded files")
def add_attachments(
    body: AddFilesRequest,
    task_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    cmd = AddFilesCommand(task_id=task_id, files=[f.to_domain() for f in body.files], actor=principal)
    return _ok(AddAttachmentsUseCase().execute(cmd, uow))


@task_router.delete("/{task_id}/attachments", summary="Remove attachments by ID")
def remove_attachments(
    body: RemoveFilesRequest,
    task_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    file_store: AbstractFileStore = Depends(get_file_store),
    principal: Principal = Depends(get_current_principal),
):
    cmd = RemoveFilesCommand(task_id=task_id, ids=body.ids, actor=principal)
    return _ok(RemoveAttachmentsUseCase(file_store).execute(cmd, uow))


@task_router.post("/{task_id}/evidence", summary="Upload proof-of-work images")
def add_work_evidence(
    body: AddFilesRequest,
    task_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    cmd = AddFilesCommand(task_id=task_id, files=[f.to_domain() for f in body.files], actor=principal)
    return _ok(AddWorkEvidenceUseCase().execute(cmd, uow))


@task_router.delete("/{task_id}/evidence", summary="Remove proof-of-work images by ID")
def remove_work_evidence(
    body: RemoveFilesRequest,
    task_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    file_store: AbstractFileStore = Depends(get_file_store),
    principal: Principal = Depends(get_current_principal),
):
    cmd = RemoveFilesCommand(task_id=task_id, ids=body.ids, actor=principal)
    return _ok(RemoveWorkEvidenceUseCase(file_store).execute(cmd, uow))


@task_router.post("/{task_id}/comments", summary="Comment on a task")
def add_comment(
    body: CommentRequest,
    task_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    bus: InMemoryEventBus = Depends(get_event_bus),
    principal: Principal = Depends(get_current_principal),
):
    cmd = AddCommentCommand(task_id=task_id, content=body.content, actor=principal)
    return _ok(AddCommentUseCase(bus).execute(cmd, uow))


@task_router.delete("/{task_id}/comments/{comment_id}", summary="Delete a comment")
def delete_comment(
    task_id: uuid.UUID = Path(...),
    comment_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    cmd = DeleteTaskItemCommand(task_id=task_id, item_id=comment_id, actor=principal)
    return _ok(DeleteCommentUseCase().execute(cmd, uow))


@task_router.post("/{task_id}/private-messages", summary="Send a private message about a task")
def send_private_message(
    body: PrivateMessageRequest,
    task_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    cmd = SendPrivateMessageCommand(
        task_id=task_id, recipient_id=body.recipient_id, content=body.content, actor=principal
    )
    return _ok(SendPrivateMessageUseCase().execute(cmd, uow))


@task_router.delete("/{task_id}/private-messages/{message_id}", summary="Delete a private message")
def delete_private_message(
    task_id: uuid.UUID = Path(...),
    message_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    cmd = DeleteTaskItemCommand(task_id=task_id, item_id=message_id, actor=principal)
    return _ok(DeletePrivateMessageUseCase().execute(cmd, uow))


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

notification_router = APIRouter(prefix="/notifications", tags=["Notifications"])


@notification_router.get("", summary="The caller's notifications, newest first")
def list_notifications(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, description="Capped server-side."),
    read: Optional[bool] = Query(default=None),
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    result = NotificationDispatcher(uow).get_user_notifications(
        principal.id, page=page, limit=limit, read=read
    )
    return _ok(result)


@notification_router.get("/unread-count", summary="Number of unread notifications")
def unread_count(
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    return _ok({"count": NotificationDispatcher(uow).get_unread_count(principal.id)})


@notification_router.patch("/read-all", summary="Mark all the caller's notifications as read")
def mark_all_read(
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    return _ok({"modified": NotificationDispatcher(uow).mark_all_as_read(principal.id)})


@notification_router.patch("/{notification_id}/read", summary="Mark one notification as read")
def mark_read(
    notification_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    principal: Principal = Depends(get_current_principal),
):
    return _ok(NotificationDispatcher(uow).mark_as_read(notification_id, principal.id))


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------

ws_router = APIRouter()


@ws_router.websocket("/ws/notifications")
async def notifications_socket(websocket: WebSocket, token: Optional[str] = Query(default=None)):
    await websocket.app.state.hub.handle_connection(websocket, token)


api_v1.include_router(user_router)
api_v1.include_router(product_router)
api_v1.include_router(project_router)
api_v1.include_router(task_router)
api_v1.include_router(notification_router)


# ===========================================================================
# HEALTH CHECK
# ===========================================================================

def health():
    return {"status": "ok"}


# ===========================================================================
# OPENAPI CUSTOMISATION — tag order and descriptions
# ===========================================================================

tags_metadata = [
    {
        "name": "Health",
        "description": "Liveness probe.",
    },
    {
        "name": "Users",
        "description": "User directory.  Every user holds exactly one system-wide role.",
    },
    {
        "name": "Products",
        "description": (
            "Stock catalogue.  `quantity` is free stock; units reserved by projects "
            "are listed under `allocations`."
        ),
    },
    {
        "name": "Projects",
        "description": (
            "Customer projects.  Creating, editing or deleting a project reserves, "
            "adjusts or releases its products atomically."
        ),
    },
    {
        "name": "Tasks",
        "description": (
            "Field work items.  Every change is recorded in the task's change log; "
            "technicians need work evidence before submitting a task for review."
        ),
    },
    {
        "name": "Notifications",
        "description": (
            "Per-user inbox.  Entries expire after the retention window and are "
            "also pushed live over /ws/notifications."
        ),
    },
]


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

def create_app(
    db: Optional[InMemoryDatabase] = None,
    bus: Optional[InMemoryEventBus] = None,
    file_store: Optional[AbstractFileStore] = None,
) -> FastAPI:
    """Build the application around the given collaborators (fresh ones by default)."""
    app = FastAPI(
        title="Field Operations — Project & Inventory API",
        version="1.0.0",
        description=(
            "REST API for field-service projects: stock reservation per project, "
            "task workflow with work evidence and audit trail, and user notifications."
        ),
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_tags=tags_metadata,
    )
    app.state.db = db if db is not None else _db
    app.state.bus = bus if bus is not None else InMemoryEventBus()
    app.state.file_store = file_store if file_store is not None else LocalFileStore(settings.upload_root)
    app.state.hub = NotificationHub()
    app.state.bus.subscribe(NOTIFICATION_TOPIC, app.state.hub.on_notification)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ValidationError, validation_handler)
    app.add_exception_handler(AuthorizationError, authorization_handler)
    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(ConflictError, conflict_handler)
    app.add_exception_handler(IntegrityError, integrity_handler)
    app.add_exception_handler(ApplicationError, application_error_handler)

    @app.on_event("startup")
    def seed_admin():
        """
        Ensure a bootstrap administrator exists and drop expired notifications
        left over in the store.
        """
        uow = InMemoryUnitOfWork(app.state.db)
        admin = EnsureAdminUseCase().execute(settings.admin_email, "Administrator", uow)
        NotificationDispatcher(InMemoryUnitOfWork(app.state.db)).purge_expired()
        token = create_access_token(Principal(id=uuid.UUID(admin.id), role=Role.ADMIN))
        logger.info("[startup] Admin user ready: {} ({})", admin.email, admin.id)
        logger.debug("[startup] Development admin token: {}", token)

    app.include_router(api_v1)
    app.include_router(ws_router)
    app.add_api_route("/health", health, methods=["GET"], tags=["Health"], summary="Service health check")

    # -----------------------------------------------------------------------
    # MCP Server — exposes all API routes as MCP tools
    # Accessible at: http://localhost:8000/mcp
    # -----------------------------------------------------------------------
    mcp = FastApiMCP(app)
    mcp.mount()

    return app


app = create_app()
