"""
infrastructure.py

In-memory implementation of all repository interfaces, the Unit of Work,
the event bus and the local file store.

Documents are kept as private copies in plain Python dicts keyed by UUID, so
a use case only changes stored state through a repository call.  Every
repository write registers its inverse in the unit of work's compensation
log; the stock operators on products are the exception, the inventory
ledger registers those itself.  All writes run under one re-entrant lock,
which makes each operator atomic with respect to concurrent requests.

To swap in a real database (e.g. MongoDB with findOneAndUpdate operators)
later, implement the same Abstract* interfaces from application.py and
override get_uow() in api.py:

    app.dependency_overrides[get_uow] = lambda: MongoUnitOfWork(client)

Nothing in service.py, application.py, or api.py needs to change.
"""

from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from application import (
    AbstractEventPublisher,
    AbstractFileStore,
    AbstractNotificationRepository,
    AbstractProductRepository,
    AbstractProjectRepository,
    AbstractTaskRepository,
    AbstractUnitOfWork,
    AbstractUserRepository,
    CompensationLog,
    ConflictError,
    NotFoundError,
)
from model import Allocation, Notification, Product, Project, StockMutation, Task, User


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Generic in-memory store
# ---------------------------------------------------------------------------

class _Store(dict):
    """A dict of documents.  Reads and writes go through copies."""

    def fetch(self, key: uuid.UUID):
        obj = self.get(key)
        return copy.deepcopy(obj) if obj is not None else None

    def put(self, obj) -> None:
        self[obj.id] = copy.deepcopy(obj)

    def remove(self, key: uuid.UUID):
        return self.pop(key, None)

    def all(self) -> list:
        return [copy.deepcopy(obj) for obj in self.values()]


# ---------------------------------------------------------------------------
# Shared in-memory database (module-level singleton)
# Persists for the lifetime of the process; restarting uvicorn resets it.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    def __init__(self):
        self.users:         _Store = _Store()
        self.products:      _Store = _Store()
        self.projects:      _Store = _Store()
        self.tasks:         _Store = _Store()
        self.notifications: _Store = _Store()
        self.lock = threading.RLock()


# Module-level singleton — shared across all requests
_db = InMemoryDatabase()


# ---------------------------------------------------------------------------
# Repository implementations
# ---------------------------------------------------------------------------

class _Repository:
    def __init__(self, db: InMemoryDatabase, journal: CompensationLog):
        self._db = db
        self._journal = journal

    def _insert(self, store: _Store, obj, label: str) -> None:
        with self._db.lock:
            store.put(obj)
        self._journal.record(f"remove {label} {obj.id}", lambda: self._drop(store, obj.id))

    def _drop(self, store: _Store, key: uuid.UUID) -> None:
        with self._db.lock:
            store.remove(key)

    def _delete(self, store: _Store, key: uuid.UUID, label: str) -> None:
        with self._db.lock:
            removed = store.remove(key)
        if removed is not None:
            self._journal.record(
                f"restore {label} {key}", lambda: self._restore(store, removed)
            )

    def _restore(self, store: _Store, obj) -> None:
        with self._db.lock:
            store[obj.id] = obj

    def _versioned_save(self, store: _Store, doc, label: str, keep: tuple = ()) -> None:
        """
        Optimistic write.  Fields named in `keep` are reference lists owned by
        push/pull operators and are carried over from the stored document.
        """
        with self._db.lock:
            stored = store.get(doc.id)
            if stored is None:
                raise NotFoundError(f"{label.capitalize()} {doc.id} not found.")
            if stored.version != doc.version:
                raise ConflictError(
                    f"{label.capitalize()} {doc.id} was modified concurrently "
                    f"(version {doc.version}, current {stored.version})."
                )
            fresh = copy.deepcopy(doc)
            for name in keep:
                setattr(fresh, name, list(getattr(stored, name)))
            fresh.version = stored.version + 1
            store[doc.id] = fresh
            doc.version = fresh.version
        written = fresh.version

        def undo() -> None:
            with self._db.lock:
                current = store.get(stored.id)
                if current is None or current.version != written:
                    raise ConflictError(
                        f"Cannot restore {label} {stored.id}: it changed after version {written}."
                    )
                for name in keep:
                    setattr(stored, name, list(getattr(current, name)))
                store[stored.id] = stored

        self._journal.record(f"restore {label} {doc.id}", undo)

    def _push(self, store: _Store, key: uuid.UUID, attr: str, value: uuid.UUID, label: str) -> None:
        with self._db.lock:
            doc = store.get(key)
            if doc is None:
                logger.warning("Cannot add {} to missing {} {}", value, label, key)
                return
            items = getattr(doc, attr)
            if value in items:
                return
            items.append(value)
        self._journal.record(
            f"pull {value} from {label} {key}.{attr}",
            lambda: self._pull_raw(store, key, attr, value),
        )

    def _pull(self, store: _Store, key: uuid.UUID, attr: str, value: uuid.UUID, label: str) -> None:
        if self._pull_raw(store, key, attr, value):
            self._journal.record(
                f"push {value} back to {label} {key}.{attr}",
                lambda: self._push_raw(store, key, attr, value),
            )

    def _pull_raw(self, store: _Store, key: uuid.UUID, attr: str, value: uuid.UUID) -> bool:
        with self._db.lock:
            doc = store.get(key)
            if doc is None or value not in getattr(doc, attr):
                return False
            getattr(doc, attr).remove(value)
            return True

    def _push_raw(self, store: _Store, key: uuid.UUID, attr: str, value: uuid.UUID) -> None:
        with self._db.lock:
            doc = store.get(key)
            if doc is not None and value not in getattr(doc, attr):
                getattr(doc, attr).append(value)


class InMemoryUserRepository(_Repository, AbstractUserRepository):
    def get(self, user_id):           return self._db.users.fetch(user_id)
    def list_all(self):               return self._db.users.all()
    def get_by_email(self, email):
        email = email.strip().lower()
        return next((u for u in self._db.users.all() if u.email == email), None)
    def add(self, user):              self._insert(self._db.users, user, "user")
    def add_assigned_task(self, user_id, task_id):
        self._push(self._db.users, user_id, "assigned_tasks", task_id, "user")
    def remove_assigned_task(self, user_id, task_id):
        self._pull(self._db.users, user_id, "assigned_tasks", task_id, "user")


class InMemoryProductRepository(_Repository, AbstractProductRepository):
    def get(self, product_id):        return self._db.products.fetch(product_id)
    def list_all(self):               return self._db.products.all()
    def get_by_reference(self, reference):
        return next((p for p in self._db.products.all() if p.reference == reference), None)
    def list_for_project(self, project_id):
        return [p for p in self._db.products.all() if p.allocation_for(project_id) is not None]
    def add(self, product):           self._insert(self._db.products, product, "product")
    def delete(self, product_id):     self._delete(self._db.products, product_id, "product")

    def update_details(self, product_id, changes: Dict[str, Any]) -> Optional[Product]:
        with self._db.lock:
            doc: Optional[Product] = self._db.products.get(product_id)
            if doc is None:
                return None
            before = {name: getattr(doc, name) for name in changes}
            for name, value in changes.items():
                setattr(doc, name, value)
            doc.updated_at = _utcnow()
            result = copy.deepcopy(doc)

        def undo() -> None:
            with self._db.lock:
                current = self._db.products.get(product_id)
                if current is None:
                    return
                for name, value in before.items():
                    if name == "quantity":
                        # revert the restock as a delta, reservations may have moved since
                        delta = changes["quantity"] - value
                        if current.quantity < delta:
                            raise ConflictError(
                                f"Cannot revert restock of {product_id}: stock already reserved.",
                                available=current.quantity,
                            )
                        current.quantity -= delta
                    else:
                        setattr(current, name, value)

        self._journal.record(f"revert details of product {product_id}", undo)
        return result

    # -- atomic stock operators --------------------------------------------

    def reserve(self, product_id, project_id, quantity) -> Optional[StockMutation]:
        with self._db.lock:
            doc: Optional[Product] = self._db.products.get(product_id)
            if doc is None:
                return None
            if doc.quantity < quantity:
                raise ConflictError("Insufficient stock.", available=doc.quantity)
            entry = doc.allocation_for(project_id)
            previous = entry.allocated_quantity if entry else 0
            doc.quantity -= quantity
            if entry is None:
                doc.allocations.append(Allocation(project_id=project_id, allocated_quantity=quantity))
            else:
                entry.allocated_quantity += quantity
            doc.updated_at = _utcnow()
            return StockMutation(copy.deepcopy(doc), previous, previous + quantity)

    def release(self, product_id, project_id, quantity) -> Optional[StockMutation]:
        with self._db.lock:
            doc: Optional[Product] = self._db.products.get(product_id)
            if doc is None:
                return None
            entry = doc.allocation_for(project_id)
            if entry is None:
                return StockMutation(copy.deepcopy(doc), 0, 0)
            previous = entry.allocated_quantity
            amount = min(max(quantity, 0), previous)
            doc.quantity += amount
            entry.allocated_quantity -= amount
            if entry.allocated_quantity == 0:
                doc.allocations.remove(entry)
            doc.updated_at = _utcnow()
            return StockMutation(copy.deepcopy(doc), previous, previous - amount)

    def adjust(self, product_id, project_id, new_quantity, expected=None) -> Optional[StockMutation]:
        with self._db.lock:
            doc: Optional[Product] = self._db.products.get(product_id)
            if doc is None:
                return None
            entry = doc.allocation_for(project_id)
            previous = entry.allocated_quantity if entry else 0
            if expected is not None and previous != expected:
                raise ConflictError(
                    f"Allocation of product {product_id} for project {project_id} "
                    f"changed concurrently (expected {expected}, found {previous})."
                )
            delta = new_quantity - previous
            if delta > doc.quantity:
                raise ConflictError("Insufficient stock.", available=doc.quantity)
            doc.quantity -= delta
            if new_quantity == 0:
                if entry is not None:
                    doc.allocations.remove(entry)
            elif entry is None:
                doc.allocations.append(Allocation(project_id=project_id, allocated_quantity=new_quantity))
            else:
                entry.allocated_quantity = new_quantity
            doc.updated_at = _utcnow()
            return StockMutation(copy.deepcopy(doc), previous, new_quantity)


class InMemoryProjectRepository(_Repository, AbstractProjectRepository):
    def get(self, project_id):        return self._db.projects.fetch(project_id)
    def list_all(self):               return self._db.projects.all()
    def add(self, project):           self._insert(self._db.projects, project, "project")
    def save(self, project):          self._versioned_save(self._db.projects, project, "project", keep=("tasks",))
    def delete(self, project_id):     self._delete(self._db.projects, project_id, "project")
    def add_task(self, project_id, task_id):
        self._push(self._db.projects, project_id, "tasks", task_id, "project")
    def remove_task(self, project_id, task_id):
        self._pull(self._db.projects, project_id, "tasks", task_id, "project")


class InMemoryTaskRepository(_Repository, AbstractTaskRepository):
    def get(self, task_id):           return self._db.tasks.fetch(task_id)
    def list_for_project(self, project_id):
        return [t for t in self._db.tasks.all() if t.project_id == project_id]
    def add(self, task):              self._insert(self._db.tasks, task, "task")
    def save(self, task):             self._versioned_save(self._db.tasks, task, "task")
    def delete(self, task_id):        self._delete(self._db.tasks, task_id, "task")


class InMemoryNotificationRepository(_Repository, AbstractNotificationRepository):
    """Rows past `expires_at` are never returned; purge_expired() drops them."""

    def _live(self, user_id: uuid.UUID, read: Optional[bool] = None) -> List[Notification]:
        now = _utcnow()
        return [
            n for n in self._db.notifications.values()
            if n.to == user_id
            and (n.expires_at is None or n.expires_at > now)
            and (read is None or n.read == read)
        ]

    def add(self, notification):
        self._insert(self._db.notifications, notification, "notification")

    def list_for_user(self, user_id, read=None, offset=0, limit=50):
        with self._db.lock:
            rows = self._live(user_id, read)
            rows.reverse()  # ties on created_at keep newest-inserted first
            rows.sort(key=lambda n: n.created_at, reverse=True)
            return [copy.deepcopy(n) for n in rows[offset:offset + limit]]

    def count_for_user(self, user_id, read=None):
        with self._db.lock:
            return len(self._live(user_id, read))

    def mark_read(self, notification_id, user_id):
        with self._db.lock:
            match = next((n for n in self._live(user_id) if n.id == notification_id), None)
            if match is None:
                return None
            was_read = match.read
            match.read = True
            result = copy.deepcopy(match)
        if not was_read:
            self._journal.record(
                f"mark notification {notification_id} unread",
                lambda: self._set_read([notification_id], False),
            )
        return result

    def mark_all_read(self, user_id):
        with self._db.lock:
            unread = self._live(user_id, read=False)
            for n in unread:
                n.read = True
            ids = [n.id for n in unread]
        if ids:
            self._journal.record(
                f"mark {len(ids)} notification(s) of {user_id} unread",
                lambda: self._set_read(ids, False),
            )
        return len(ids)

    def purge_expired(self, now=None):
        now = now or _utcnow()
        with self._db.lock:
            expired = [
                key for key, n in self._db.notifications.items()
                if n.expires_at is not None and n.expires_at <= now
            ]
            for key in expired:
                self._db.notifications.remove(key)
        return len(expired)

    def _set_read(self, ids: List[uuid.UUID], value: bool) -> None:
        with self._db.lock:
            for key in ids:
                n = self._db.notifications.get(key)
                if n is not None:
                    n.read = value


# ---------------------------------------------------------------------------
# Unit of Work
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Wraps all in-memory repositories.  Writes are applied immediately, so
    commit() only forgets the compensation log and rollback() unwinds it.
    In a real database implementation commit() would end the session.
    """

    def __init__(self, db: InMemoryDatabase = _db):
        self.compensations = CompensationLog()
        self.users         = InMemoryUserRepository(db, self.compensations)
        self.products      = InMemoryProductRepository(db, self.compensations)
        self.projects      = InMemoryProjectRepository(db, self.compensations)
        self.tasks         = InMemoryTaskRepository(db, self.compensations)
        self.notifications = InMemoryNotificationRepository(db, self.compensations)

    def commit(self) -> None:
        self.compensations.clear()

    def rollback(self) -> None:
        pending = len(self.compensations)
        failures = self.compensations.unwind()
        if failures:
            logger.critical("Rollback left {} of {} write(s) in place", failures, pending)
        elif pending:
            logger.debug("Rolled back {} write(s)", pending)


# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------

class InMemoryEventBus(AbstractEventPublisher):
    """
    Synchronous publish/subscribe.  A failing handler is logged and does not
    stop delivery to the others.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Callable[[Dict[str, Any]], None]]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, handler: Callable[[Dict[str, Any]], None]) -> Callable[[], None]:
        with self._lock:
            self._handlers.setdefault(topic, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(topic, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            handlers = list(self._handlers.get(topic, []))
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                logger.opt(exception=True).error("Event handler failed on topic {}", topic)


# ---------------------------------------------------------------------------
# File storage
# ---------------------------------------------------------------------------

class LocalFileStore(AbstractFileStore):
    """Files uploaded under `root`, addressed by urls such as /uploads/tasks/a.png."""

    def __init__(self, root: str):
        self._root = Path(root).resolve()

    def path_for(self, url: str) -> Path:
        relative = url.split("?", 1)[0].lstrip("/")
        prefix = self._root.name + "/"
        if relative.startswith(prefix):
            relative = relative[len(prefix):]
        path = (self._root / relative).resolve()
        if self._root not in path.parents:
            raise ValueError(f"Refusing to touch a file outside the upload root: {url}")
        return path

    def delete(self, url: str) -> None:
        self.path_for(url).unlink()
        logger.debug("Deleted file {}", url)
