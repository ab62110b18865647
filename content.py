"""
Videos, notices and playlists owned by teachers.

Every read goes through ``can_view`` and every write through ``can_mutate``;
listings use the equivalent Mongo filters so pagination stays in the database.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from fastapi import UploadFile
from pydantic import ValidationError as SchemaError
from pymongo import ReturnDocument

from access import (
    ContentItem,
    Principal,
    can_view,
    notice_expires_at,
    require_mutate,
    require_role,
    require_view,
    student_visibility_query,
)
from database import Database, object_id, serialize, utcnow
from errors import Conflict, NotFound, ValidationError
from media import ObjectStorage, transfer_upload
from notifications import NotificationFanout
from pagination import Page, paginate
from schemas import (
    ALL,
    YEARS,
    Attachment,
    Notice,
    NoticePayload,
    Playlist,
    PlaylistPayload,
    Video,
    VideoAccessPayload,
)

LOGGER = logging.getLogger(__name__)

STAFF = ("teacher", "admin")
NOTICE_ATTACHMENT_LIMIT = 5 * 1024 * 1024


def _check_scope(branch: Optional[str], year: Optional[str]) -> None:
    if branch is not None and not str(branch).strip():
        raise ValidationError("Please add a branch")
    if year is not None and year != ALL and year not in YEARS:
        raise ValidationError(f"Year must be one of {', '.join(YEARS)} or {ALL}")


def _schema_error(error: SchemaError) -> ValidationError:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return ValidationError(f"{location}: {first.get('msg', 'invalid value')}" if location else first.get("msg"))


def _search_filter(search: Optional[str], fields: Iterable[str]) -> Optional[dict]:
    if not search:
        return None
    pattern = {"$regex": re.escape(search), "$options": "i"}
    return {"$or": [{name: pattern} for name in fields]}


def _combine(*clauses: Optional[dict]) -> dict:
    parts = [clause for clause in clauses if clause]
    if not parts:
        return {}
    if len(parts) == 1:
        return parts[0]
    return {"$and": parts}


class _OwnedCollection:
    kind = ""
    collection = ""

    def __init__(self, database: Database, fanout: NotificationFanout):
        self._database = database
        self._fanout = fanout

    @property
    def _documents(self):
        return self._database[self.collection]

    def _load(self, item_id: str) -> dict:
        document = self._documents.find_one({"_id": object_id(item_id, f"{self.kind} id")})
        if document is None:
            raise NotFound(f"{self.kind.capitalize()} not found")
        return document

    def _item(self, document: dict) -> ContentItem:
        return ContentItem.from_document(self.kind, document)

    def _visible(self, principal: Principal, item_id: str) -> dict:
        document = self._load(item_id)
        require_view(principal, self._item(document))
        return document

    def _mutable(self, principal: Principal, item_id: str) -> dict:
        document = self._load(item_id)
        require_mutate(principal, self._item(document))
        return document

    def _apply(self, document: dict, changes: Dict[str, Any], allowed: Iterable[str], model) -> dict:
        updates = {key: value for key, value in changes.items() if key in allowed and value is not None}
        merged = {key: value for key, value in document.items() if key in model.model_fields}
        merged.update(updates)
        try:
            model(**merged)
        except SchemaError as error:
            raise _schema_error(error) from error
        return updates

    def _cohort_recipients(self, document: dict) -> List[str]:
        """Approved students who can see ``document`` right now."""
        item = self._item(document)
        query: Dict[str, Any] = {"role": "student", "is_approved": True}
        if item.branch != ALL:
            query["branch"] = item.branch
        if item.year != ALL:
            query["year"] = item.year
        recipients = []
        for student in self._database["user"].find(query):
            if can_view(Principal.from_document(student), item):
                recipients.append(str(student["_id"]))
        return recipients


class VideoCatalog(_OwnedCollection):
    kind = "video"
    collection = "video"
    editable = (
        "title",
        "description",
        "thumbnail_url",
        "subject",
        "topic",
        "tags",
        "branch",
        "year",
        "duration",
        "is_approved",
    )

    def __init__(self, database: Database, fanout: NotificationFanout, storage: ObjectStorage):
        super().__init__(database, fanout)
        self._storage = storage

    async def upload_media(self, principal: Principal, upload: UploadFile, *, timeout: float) -> dict:
        require_role(principal, *STAFF)
        stored = await transfer_upload(
            self._storage,
            upload,
            folder="videos",
            timeout=timeout,
            allowed_types=("video/*",),
        )
        return {"videoUrl": stored.url, "mediaKey": stored.key, "size": stored.size}

    def create(self, principal: Principal, data: Dict[str, Any]) -> dict:
        require_role(principal, *STAFF)
        _check_scope(data.get("branch"), data.get("year"))
        fields = {key: value for key, value in data.items() if value is not None}
        special_access = [str(object_id(value, "student id")) for value in fields.pop("special_access", [])]
        try:
            video = Video(**fields, teacher_id=principal.id, special_access=special_access)
        except SchemaError as error:
            raise _schema_error(error) from error
        video_id = self._database.create_document(self.collection, video)
        LOGGER.info("Teacher %s created video %s", principal.id, video_id)
        if special_access:
            self._notify_access(self._load(video_id), special_access)
        return serialize(self._load(video_id))

    def list(
        self,
        principal: Principal,
        *,
        subject: Optional[str] = None,
        search: Optional[str] = None,
        teacher_id: Optional[str] = None,
        **page_args: Any,
    ) -> Page:
        if principal.is_student:
            scope = student_visibility_query(principal)
        elif principal.role == "teacher":
            scope = {"teacher_id": principal.id}
        else:
            scope = {"teacher_id": teacher_id} if teacher_id else None
        filters = {"subject": subject} if subject else None
        query = _combine(scope, filters, _search_filter(search, ("title", "description", "topic", "tags")))
        return paginate(
            self._documents,
            query,
            allowed_sort=("created_at", "title", "views", "likes_count", "duration"),
            transform=serialize,
            **page_args,
        )

    def get(self, principal: Principal, video_id: str) -> dict:
        video = self._visible(principal, video_id)
        key = str(video["_id"])
        data = serialize(video)
        data["commentsCount"] = self._database["comment"].count_documents({"video_id": key})
        data["userLiked"] = self._database["like"].count_documents({"video_id": key, "user_id": principal.id}) > 0
        return data

    def update(self, principal: Principal, video_id: str, changes: Dict[str, Any]) -> dict:
        video = self._mutable(principal, video_id)
        _check_scope(changes.get("branch"), changes.get("year"))
        updates = self._apply(video, changes, self.editable, Video)
        if not updates:
            return serialize(video)
        updates["updated_at"] = utcnow()
        updated = self._documents.find_one_and_update(
            {"_id": video["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
        )
        return serialize(updated)

    def update_special_access(self, principal: Principal, video_id: str, student_ids: Iterable[str]) -> dict:
        video = self._mutable(principal, video_id)
        granted = list(dict.fromkeys(str(object_id(value, "student id")) for value in student_ids))
        previous = set(video.get("special_access", []))
        updated = self._documents.find_one_and_update(
            {"_id": video["_id"]},
            {"$set": {"special_access": granted, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        added = [value for value in granted if value not in previous]
        if added:
            self._notify_access(updated, added)
        return serialize(updated)

    def _notify_access(self, video: dict, student_ids: List[str]) -> None:
        self._fanout.emit_many(
            student_ids,
            "Video Access Granted",
            f'You have been granted special access to the video "{video.get("title", "")}"',
            VideoAccessPayload(video_id=str(video["_id"])),
        )

    def delete(self, principal: Principal, video_id: str) -> None:
        video = self._mutable(principal, video_id)
        key = str(video["_id"])
        if video.get("media_key"):
            self._storage.destroy(video["media_key"])
        self._documents.delete_one({"_id": video["_id"]})
        comment_ids = [str(row["_id"]) for row in self._database["comment"].find({"video_id": key}, {"_id": 1})]
        self._database["comment"].delete_many({"video_id": key})
        self._database["report"].delete_many({"comment_id": {"$in": comment_ids}})
        self._database["like"].delete_many({"video_id": key})
        self._database["view"].delete_many({"video_id": key})
        self._database["question"].delete_many({"video_id": key})
        self._database["note"].update_many({"video_id": key}, {"$set": {"video_id": None}})
        self._database["playlist"].update_many({}, {"$pull": {"videos": {"video_id": key}}})
        LOGGER.info("Video %s deleted by %s", key, principal.id)


class NoticeBoard(_OwnedCollection):
    kind = "notice"
    collection = "notice"
    editable = ("title", "content", "category", "branch", "year", "priority", "expiration", "is_active")

    def __init__(self, database: Database, fanout: NotificationFanout, storage: ObjectStorage):
        super().__init__(database, fanout)
        self._storage = storage

    def create(self, principal: Principal, data: Dict[str, Any]) -> dict:
        require_role(principal, *STAFF)
        _check_scope(data.get("branch"), data.get("year"))
        now = utcnow()
        fields = {key: value for key, value in data.items() if value is not None}
        try:
            notice = Notice(**fields, teacher_id=principal.id)
        except SchemaError as error:
            raise _schema_error(error) from error
        self._check_expiration(notice.expiration.model_dump())
        document = notice.model_dump()
        document["created_at"] = now
        document["expires_at"] = notice_expires_at(document["expiration"], now)
        notice_id = self._database.create_document(self.collection, document)
        created = self._load(notice_id)
        self._broadcast(created, "notice_posted", "New Notice")
        return serialize(created)

    @staticmethod
    def _check_expiration(expiration: dict) -> None:
        if expiration.get("type") == "date" and not expiration.get("date"):
            raise ValidationError("Please provide an expiration date")
        if expiration.get("type") == "duration" and not expiration.get("duration"):
            raise ValidationError("Please provide an expiration duration")

    def _broadcast(self, notice: dict, kind: str, title: str) -> None:
        recipients = self._cohort_recipients(notice)
        LOGGER.info("Notice %s: %s to %d students", notice["_id"], kind, len(recipients))
        self._fanout.emit_many(
            recipients,
            title,
            notice.get("title", ""),
            NoticePayload(
                type=kind,
                notice_id=str(notice["_id"]),
                category=notice.get("category", ""),
                priority=notice.get("priority", "normal"),
            ),
            priority="high" if notice.get("priority") == "high" else "medium",
        )

    def list(
        self,
        principal: Principal,
        *,
        category: Optional[str] = None,
        priority: Optional[str] = None,
        branch: Optional[str] = None,
        year: Optional[str] = None,
        status: Optional[str] = None,
        mine: bool = False,
        **page_args: Any,
    ) -> Page:
        now = utcnow()
        unexpired = {"$or": [{"expires_at": None}, {"expires_at": {"$gt": now}}]}
        filters: Dict[str, Any] = {}
        if category:
            filters["category"] = category
        if priority:
            filters["priority"] = priority

        if principal.is_student:
            scope = student_visibility_query(principal, published={"is_active": True})
            lifecycle = unexpired
        else:
            scope = {"teacher_id": principal.id} if mine else None
            if branch and branch != ALL:
                filters["branch"] = branch
            if year and year != ALL:
                filters["year"] = year
            if status == "expired":
                lifecycle = {"expires_at": {"$ne": None, "$lte": now}}
            elif status == "all":
                lifecycle = None
            else:
                lifecycle = {"$and": [{"is_active": True}, unexpired]}
        query = _combine(scope, filters or None, lifecycle)
        return paginate(
            self._documents,
            query,
            allowed_sort=("created_at", "priority", "title", "expires_at"),
            transform=serialize,
            **page_args,
        )

    def get(self, principal: Principal, notice_id: str) -> dict:
        return serialize(self._visible(principal, notice_id))

    def update(self, principal: Principal, notice_id: str, changes: Dict[str, Any]) -> dict:
        notice = self._mutable(principal, notice_id)
        _check_scope(changes.get("branch"), changes.get("year"))
        updates = self._apply(notice, changes, self.editable, Notice)
        if not updates:
            return serialize(notice)
        if "expiration" in updates:
            expiration = dict(updates["expiration"])
            self._check_expiration(expiration)
            updates["expires_at"] = notice_expires_at(expiration, notice.get("created_at"))
        updates["updated_at"] = utcnow()
        updated = self._documents.find_one_and_update(
            {"_id": notice["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
        )
        self._broadcast(updated, "notice_updated", "Notice Updated")
        return serialize(updated)

    async def add_attachment(self, principal: Principal, notice_id: str, upload: UploadFile, *, timeout: float) -> dict:
        notice = self._mutable(principal, notice_id)
        stored = await transfer_upload(
            self._storage,
            upload,
            folder="notices",
            timeout=timeout,
            allowed_types=("application/pdf",),
            max_bytes=NOTICE_ATTACHMENT_LIMIT,
        )
        attachment = Attachment(filename=stored.filename, url=stored.url, key=stored.key, size=stored.size)
        updated = self._documents.find_one_and_update(
            {"_id": notice["_id"]},
            {"$push": {"attachments": attachment.model_dump()}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return serialize(updated)

    def delete(self, principal: Principal, notice_id: str) -> None:
        notice = self._mutable(principal, notice_id)
        for attachment in notice.get("attachments", []):
            self._storage.destroy(attachment["key"])
        self._documents.delete_one({"_id": notice["_id"]})


class PlaylistShelf(_OwnedCollection):
    kind = "playlist"
    collection = "playlist"
    editable = ("title", "description", "thumbnail", "category", "branch", "year")

    def create(self, principal: Principal, data: Dict[str, Any]) -> dict:
        require_role(principal, *STAFF)
        _check_scope(data.get("branch"), data.get("year"))
        fields = {key: value for key, value in data.items() if value is not None}
        try:
            playlist = Playlist(**fields, teacher_id=principal.id)
        except SchemaError as error:
            raise _schema_error(error) from error
        playlist_id = self._database.create_document(self.collection, playlist)
        return serialize(self._load(playlist_id))

    def list(
        self,
        principal: Principal,
        *,
        category: Optional[str] = None,
        teacher_id: Optional[str] = None,
        search: Optional[str] = None,
        **page_args: Any,
    ) -> Page:
        if principal.is_student:
            scope = student_visibility_query(principal, published={})
        elif principal.role == "teacher":
            scope = {"teacher_id": principal.id}
        else:
            scope = {"teacher_id": teacher_id} if teacher_id else None
        filters = {"category": category} if category else None
        query = _combine(scope, filters, _search_filter(search, ("title", "description")))
        return paginate(
            self._documents, query, allowed_sort=("created_at", "title"), transform=serialize, **page_args
        )

    def get(self, principal: Principal, playlist_id: str) -> dict:
        playlist = self._visible(principal, playlist_id)
        entries = sorted(playlist.get("videos", []), key=lambda entry: entry.get("order", 0))
        videos = {
            str(video["_id"]): video
            for video in self._database.find_by_ids("video", [entry["video_id"] for entry in entries])
        }
        data = serialize(playlist)
        data["videos"] = [
            {"order": entry["order"], "video": serialize(videos[entry["video_id"]])}
            for entry in entries
            if entry["video_id"] in videos
            and can_view(principal, ContentItem.from_document("video", videos[entry["video_id"]]))
        ]
        data["videoCount"] = len(data["videos"])
        data["totalDuration"] = sum(item["video"].get("duration", 0) or 0 for item in data["videos"])
        return data

    def update(self, principal: Principal, playlist_id: str, changes: Dict[str, Any]) -> dict:
        playlist = self._mutable(principal, playlist_id)
        _check_scope(changes.get("branch"), changes.get("year"))
        updates = self._apply(playlist, changes, self.editable, Playlist)
        if not updates:
            return serialize(playlist)
        updates["updated_at"] = utcnow()
        updated = self._documents.find_one_and_update(
            {"_id": playlist["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
        )
        return serialize(updated)

    def add_video(self, principal: Principal, playlist_id: str, video_id: str) -> dict:
        playlist = self._mutable(principal, playlist_id)
        video = self._database["video"].find_one({"_id": object_id(video_id, "video id")})
        if video is None:
            raise NotFound("Video not found")
        key = str(video["_id"])
        entries = playlist.get("videos", [])
        order = max((entry.get("order", 0) for entry in entries), default=0) + 1
        updated = self._documents.find_one_and_update(
            {"_id": playlist["_id"], "videos.video_id": {"$ne": key}},
            {"$push": {"videos": {"video_id": key, "order": order}}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise Conflict("Video already in playlist")
        self._fanout.emit_many(
            self._cohort_recipients(updated),
            "Playlist Updated",
            f'A new video was added to "{updated.get("title", "")}"',
            PlaylistPayload(playlist_id=str(updated["_id"]), video_id=key),
        )
        return serialize(updated)

    def remove_video(self, principal: Principal, playlist_id: str, video_id: str) -> dict:
        playlist = self._mutable(principal, playlist_id)
        key = str(video_id)
        if not any(entry.get("video_id") == key for entry in playlist.get("videos", [])):
            raise NotFound("Video not in playlist")
        updated = self._documents.find_one_and_update(
            {"_id": playlist["_id"]},
            {"$pull": {"videos": {"video_id": key}}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return serialize(updated)

    def delete(self, principal: Principal, playlist_id: str) -> None:
        playlist = self._mutable(principal, playlist_id)
        self._documents.delete_one({"_id": playlist["_id"]})


__all__ = ["NoticeBoard", "PlaylistShelf", "VideoCatalog"]
