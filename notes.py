"""Student notes, either standalone or pinned to a video."""

import logging
import re
from typing import Any, Dict, Optional

from pymongo import ReturnDocument

from access import ContentItem, Principal, require_role, require_view
from database import Database, object_id, serialize, utcnow
from errors import Forbidden, NotFound, ValidationError
from pagination import Page, paginate
from schemas import Note

LOGGER = logging.getLogger(__name__)

COLLECTION = "note"


class NoteBook:
    def __init__(self, database: Database):
        self._database = database

    @property
    def _notes(self):
        return self._database[COLLECTION]

    def _owned(self, principal: Principal, note_id: str) -> dict:
        note = self._notes.find_one({"_id": object_id(note_id, "note id")})
        if note is None:
            raise NotFound("Note not found")
        if note["student_id"] != principal.id:
            raise Forbidden("Not authorized to access this note")
        return note

    def save(
        self,
        principal: Principal,
        *,
        content: str,
        title: Optional[str] = None,
        video_id: Optional[str] = None,
        timestamp: Optional[float] = None,
    ) -> dict:
        """Create a note, or replace the student's existing note on ``video_id``."""
        require_role(principal, "student")
        title = (title or "").strip()
        if timestamp is not None and timestamp < 0:
            raise ValidationError("timestamp cannot be negative")

        if not video_id:
            if not title:
                raise ValidationError("Title is required for standalone notes")
            note = Note(title=title, content=content or "", student_id=principal.id, timestamp=timestamp or 0)
            note_id = self._database.create_document(COLLECTION, note)
            return serialize(self._notes.find_one({"_id": object_id(note_id)}))

        video = self._database["video"].find_one({"_id": object_id(video_id, "video id")})
        if video is None:
            raise NotFound("Video not found")
        require_view(principal, ContentItem.from_document("video", video))

        now = utcnow()
        fields: Dict[str, Any] = {"content": content or "", "updated_at": now}
        if title:
            fields["title"] = title
        if timestamp is not None:
            fields["timestamp"] = timestamp
        defaults = {
            name: value
            for name, value in Note(student_id=principal.id).model_dump().items()
            if name not in fields and name not in ("student_id", "video_id")
        }
        note = self._notes.find_one_and_update(
            {"student_id": principal.id, "video_id": str(video["_id"])},
            {"$set": fields, "$setOnInsert": {**defaults, "created_at": now}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return serialize(note)

    def list(
        self,
        principal: Principal,
        *,
        video_id: Optional[str] = None,
        search: Optional[str] = None,
        **page_args: Any,
    ) -> Page:
        query: Dict[str, Any] = {"student_id": principal.id}
        if video_id:
            query["video_id"] = video_id
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query["$or"] = [{"title": pattern}, {"content": pattern}]
        return paginate(
            self._notes,
            query,
            allowed_sort=("created_at", "updated_at", "title", "timestamp"),
            transform=serialize,
            **page_args,
        )

    def get(self, principal: Principal, note_id: str) -> dict:
        return serialize(self._owned(principal, note_id))

    def update(self, principal: Principal, note_id: str, changes: Dict[str, Any]) -> dict:
        note = self._owned(principal, note_id)
        updates = {key: changes[key] for key in ("title", "content", "timestamp") if changes.get(key) is not None}
        if "title" in updates:
            updates["title"] = str(updates["title"]).strip()
            if not updates["title"] and not note.get("video_id"):
                raise ValidationError("Title is required for standalone notes")
        if updates.get("timestamp", 0) < 0:
            raise ValidationError("timestamp cannot be negative")
        updates["updated_at"] = utcnow()
        updated = self._notes.find_one_and_update(
            {"_id": note["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
        )
        return serialize(updated)

    def delete(self, principal: Principal, note_id: str) -> None:
        note = self._owned(principal, note_id)
        self._notes.delete_one({"_id": note["_id"]})
        LOGGER.debug("Student %s deleted note %s", principal.id, note_id)


__all__ = ["NoteBook"]
