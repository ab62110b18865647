"""
Notification fan-out and the recipient's inbox.

Fan-out is fire-and-forget relative to the action that triggers it: ``emit``
and ``emit_many`` hand the insert to an executor (or run it inline) behind an
error boundary, so a failed insert is logged and never reaches the caller.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, Future
from typing import Any, Dict, Iterable, List, Optional, Set

from access import Principal
from database import Database, object_id, serialize, utcnow
from errors import Forbidden, NotFound
from pagination import Page, paginate
from schemas import NOTIFICATION_TYPES, Notification, NotificationPayload

LOGGER = logging.getLogger(__name__)

COLLECTION = "notification"


class NotificationFanout:
    """Creates notification rows, one per recipient."""

    def __init__(self, database: Database, executor: Optional[Executor] = None) -> None:
        self._database = database
        self._executor = executor
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()

    def _build(
        self,
        recipient_id: str,
        title: str,
        message: str,
        payload: NotificationPayload,
        priority: str,
    ) -> dict:
        notification = Notification(
            recipient_id=str(recipient_id),
            type=payload.type,
            title=title,
            message=message,
            data=payload,
            priority=priority,
        )
        return notification.model_dump()

    def notify(
        self,
        recipient_id: str,
        title: str,
        message: str,
        payload: NotificationPayload,
        *,
        priority: str = "medium",
    ) -> str:
        document = self._build(recipient_id, title, message, payload, priority)
        return self._database.create_document(COLLECTION, document)

    def notify_many(
        self,
        recipient_ids: Iterable[str],
        title: str,
        message: str,
        payload: NotificationPayload,
        *,
        priority: str = "medium",
    ) -> int:
        recipients = list(dict.fromkeys(str(value) for value in recipient_ids))
        if not recipients:
            return 0
        template = self._build(recipients[0], title, message, payload, priority)
        now = utcnow()
        documents = [
            dict(template, recipient_id=recipient, created_at=now, updated_at=now)
            for recipient in recipients
        ]
        self._database[COLLECTION].insert_many(documents)
        return len(documents)

    # Error-bounded handoff used by the services

    def emit(self, recipient_id: str, title: str, message: str, payload: NotificationPayload, **kwargs: Any) -> None:
        self._dispatch(self.notify, recipient_id, title, message, payload, **kwargs)

    def emit_many(
        self, recipient_ids: Iterable[str], title: str, message: str, payload: NotificationPayload, **kwargs: Any
    ) -> None:
        self._dispatch(self.notify_many, list(recipient_ids), title, message, payload, **kwargs)

    def _dispatch(self, func, *args: Any, **kwargs: Any) -> None:
        if self._executor is None:
            self._run_guarded(func, *args, **kwargs)
            return
        try:
            future = self._executor.submit(self._run_guarded, func, *args, **kwargs)
        except RuntimeError:
            LOGGER.exception("Notification executor rejected %s", getattr(func, "__name__", func))
            return
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    @staticmethod
    def _run_guarded(func, *args: Any, **kwargs: Any) -> None:
        try:
            func(*args, **kwargs)
        except Exception:  # noqa: BLE001 - notification failures never fail the trigger
            payload = args[3] if len(args) > 3 else None
            LOGGER.exception(
                "Notification fan-out failed (type=%s)", getattr(payload, "type", "unknown")
            )

    def pending(self) -> int:
        with self._pending_lock:
            return len(self._pending)


class NotificationInbox:
    """Read, mark and delete operations available to the recipient."""

    def __init__(self, database: Database) -> None:
        self._database = database

    @property
    def _collection(self):
        return self._database[COLLECTION]

    def list(
        self,
        principal: Principal,
        *,
        type: Optional[str] = None,
        read: Optional[bool] = None,
        page: Any = None,
        limit: Any = None,
        sort: Optional[str] = None,
        order: Optional[str] = None,
    ) -> Page:
        query: Dict[str, Any] = {"recipient_id": principal.id}
        if type and type in NOTIFICATION_TYPES:
            query["type"] = type
        if read is not None:
            query["is_read"] = read
        result = paginate(
            self._collection,
            query,
            page=page,
            limit=limit,
            sort=sort,
            order=order,
            allowed_sort=("created_at", "type", "priority", "is_read"),
            transform=serialize,
        )
        result.extra["unreadCount"] = self.unread_count(principal)
        return result

    def unread_count(self, principal: Principal) -> int:
        return self._collection.count_documents({"recipient_id": principal.id, "is_read": False})

    def _owned(self, principal: Principal, notification_id: str, action: str) -> dict:
        notification = self._collection.find_one({"_id": object_id(notification_id, "notification id")})
        if notification is None:
            raise NotFound("Notification not found")
        if notification["recipient_id"] != principal.id:
            raise Forbidden(f"Not authorized to {action} this notification")
        return notification

    def mark_read(self, principal: Principal, notification_id: str) -> dict:
        notification = self._owned(principal, notification_id, "update")
        self._collection.update_one({"_id": notification["_id"]}, {"$set": {"is_read": True}})
        notification["is_read"] = True
        return serialize(notification)

    def mark_all_read(self, principal: Principal) -> int:
        result = self._collection.update_many(
            {"recipient_id": principal.id, "is_read": False}, {"$set": {"is_read": True}}
        )
        return result.modified_count

    def delete(self, principal: Principal, notification_id: str) -> None:
        notification = self._owned(principal, notification_id, "delete")
        self._collection.delete_one({"_id": notification["_id"]})

    def delete_all(self, principal: Principal) -> int:
        return self._collection.delete_many({"recipient_id": principal.id}).deleted_count


__all__ = ["NotificationFanout", "NotificationInbox"]
