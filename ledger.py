"""
Engagement ledger: likes, views, comments, comment likes and reports.

Uniqueness is enforced by the unique compound indexes created in
``Database.ensure_indexes``; counters only ever move through ``$inc``.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from access import ContentItem, Principal, require_role, require_view
from database import Database, is_duplicate_key, object_id, serialize, utcnow
from errors import (
    AlreadyExists,
    Conflict,
    DuplicateReport,
    Forbidden,
    NotFound,
    SelfReport,
    ValidationError,
)
from notifications import NotificationFanout
from pagination import Page, paginate
from schemas import (
    REPORT_REASONS,
    Comment,
    CommentLikePayload,
    Like,
    Report,
    VideoCommentPayload,
    VideoLikePayload,
)

LOGGER = logging.getLogger(__name__)

VIEW_METRICS = ("watch_time", "completion_percentage", "last_position")
REVIEW_STATUSES = ("reviewed", "ignored")


@dataclass(frozen=True)
class CommentState:
    liked: bool
    likes_count: int
    comment: dict

    def as_dict(self) -> dict:
        return {"liked": self.liked, "likesCount": self.likes_count, "comment": self.comment}


class EngagementLedger:
    def __init__(self, database: Database, fanout: NotificationFanout):
        self._database = database
        self._fanout = fanout

    # Helpers

    def _video(self, video_id: str) -> dict:
        video = self._database["video"].find_one({"_id": object_id(video_id, "video id")})
        if video is None:
            raise NotFound("Video not found")
        return video

    def _visible_video(self, principal: Principal, video_id: str) -> dict:
        video = self._video(video_id)
        require_view(principal, ContentItem.from_document("video", video))
        return video

    def _comment(self, comment_id: str) -> dict:
        comment = self._database["comment"].find_one({"_id": object_id(comment_id, "comment id")})
        if comment is None:
            raise NotFound("Comment not found")
        return comment

    def _visible_comment(self, principal: Principal, comment_id: str) -> dict:
        comment = self._comment(comment_id)
        self._visible_video(principal, comment["video_id"])
        return comment

    def _require_owner_or_admin(self, principal: Principal, video: dict, what: str) -> None:
        if not principal.is_admin and video.get("teacher_id") != principal.id:
            raise Forbidden(f"Not authorized to view {what}")

    # Likes

    def toggle_like(self, principal: Principal, video_id: str) -> Dict[str, bool]:
        video = self._visible_video(principal, video_id)
        key = {"video_id": str(video["_id"]), "user_id": principal.id}

        removed = self._database["like"].find_one_and_delete(key)
        if removed is not None:
            self._database["video"].update_one({"_id": video["_id"]}, {"$inc": {"likes_count": -1}})
            return {"liked": False}

        try:
            self._database.create_document("like", Like(**key))
        except PyMongoError as error:
            if is_duplicate_key(error):
                raise AlreadyExists() from error
            raise
        self._database["video"].update_one({"_id": video["_id"]}, {"$inc": {"likes_count": 1}})

        if video.get("teacher_id") != principal.id:
            self._fanout.emit(
                video["teacher_id"],
                "New Like",
                f'{principal.name} liked your video "{video.get("title", "")}"',
                VideoLikePayload(video_id=key["video_id"], liked_by=principal.id),
            )
        return {"liked": True}

    def list_video_likes(self, principal: Principal, video_id: str, **page_args: Any) -> Page:
        video = self._visible_video(principal, video_id)
        query = {"video_id": str(video["_id"])}
        result = paginate(self._database["like"], query, transform=serialize, **page_args)
        result.extra["userLiked"] = (
            self._database["like"].count_documents({**query, "user_id": principal.id}) > 0
        )
        return result

    def list_liked_videos(self, principal: Principal, **page_args: Any) -> Page:
        result = paginate(
            self._database["like"], {"user_id": principal.id}, transform=serialize, **page_args
        )
        videos = {
            str(video["_id"]): serialize(video)
            for video in self._database.find_by_ids("video", [like["video_id"] for like in result.items])
        }
        for like in result.items:
            like["video"] = videos.get(like["video_id"])
        return result

    # Views

    def record_view(
        self,
        principal: Principal,
        video_id: str,
        watch_time: Optional[float] = None,
        completion_percentage: Optional[float] = None,
        last_position: Optional[float] = None,
    ) -> dict:
        video = self._visible_video(principal, video_id)
        metrics = {
            "watch_time": watch_time,
            "completion_percentage": completion_percentage,
            "last_position": last_position,
        }
        for name, value in metrics.items():
            if value is not None and value < 0:
                raise ValidationError(f"{name} cannot be negative")
        if completion_percentage is not None and completion_percentage > 100:
            raise ValidationError("completion_percentage cannot exceed 100")

        now = utcnow()
        key = {"video_id": str(video["_id"]), "user_id": principal.id}
        # zero or missing metrics never overwrite a recorded value
        provided = {name: value for name, value in metrics.items() if value}
        defaults = {name: 0 for name in VIEW_METRICS if name not in provided}
        update = {
            "$set": {**provided, "watched_at": now, "updated_at": now},
            "$setOnInsert": {**defaults, "created_at": now},
        }

        try:
            result = self._database["view"].update_one(key, update, upsert=True)
        except PyMongoError as error:
            if not is_duplicate_key(error):
                raise
            # lost the insert race; the row exists now, so this is an update
            result = self._database["view"].update_one(key, update, upsert=False)

        if getattr(result, "upserted_id", None) is not None:
            self._database["video"].update_one({"_id": video["_id"]}, {"$inc": {"views": 1}})
        return serialize(self._database["view"].find_one(key))

    def watch_history(self, principal: Principal, **page_args: Any) -> Page:
        page_args.setdefault("sort", "watched_at")
        result = paginate(
            self._database["view"],
            {"user_id": principal.id},
            allowed_sort=("watched_at", "created_at", "completion_percentage"),
            transform=serialize,
            **page_args,
        )
        videos = {
            str(video["_id"]): serialize(video)
            for video in self._database.find_by_ids("video", [view["video_id"] for view in result.items])
        }
        for view in result.items:
            view["video"] = videos.get(view["video_id"])
        return result

    def clear_watch_history(self, principal: Principal) -> int:
        return self._database["view"].delete_many({"user_id": principal.id}).deleted_count

    def list_video_views(self, principal: Principal, video_id: str, **page_args: Any) -> Page:
        video = self._video(video_id)
        self._require_owner_or_admin(principal, video, "this data")
        return paginate(
            self._database["view"], {"video_id": str(video["_id"])}, transform=serialize, **page_args
        )

    def view_stats(self, principal: Principal, video_id: str) -> dict:
        video = self._video(video_id)
        self._require_owner_or_admin(principal, video, "these statistics")
        views = list(self._database["view"].find({"video_id": str(video["_id"])}))
        total = len(views)
        completions = [view.get("completion_percentage", 0) or 0 for view in views]
        return {
            "totalViews": total,
            "uniqueViewers": len({view["user_id"] for view in views}),
            "averageWatchTime": (sum(view.get("watch_time", 0) or 0 for view in views) / total) if total else 0,
            "averageCompletion": (sum(completions) / total) if total else 0,
            "completionDistribution": {
                "0-25": sum(1 for value in completions if value <= 25),
                "26-50": sum(1 for value in completions if 25 < value <= 50),
                "51-75": sum(1 for value in completions if 50 < value <= 75),
                "76-100": sum(1 for value in completions if value > 75),
            },
        }

    # Comments

    def add_comment(
        self, principal: Principal, video_id: str, text: str, parent_id: Optional[str] = None
    ) -> dict:
        content = (text or "").strip()
        if not content:
            raise ValidationError("Comment content is required")
        video = self._visible_video(principal, video_id)
        video_key = str(video["_id"])

        parent_key = None
        if parent_id:
            parent = self._database["comment"].find_one({"_id": object_id(parent_id, "parent comment id")})
            if parent is None or parent.get("video_id") != video_key:
                raise ValidationError("Parent comment does not belong to this video")
            # replies hang off the top-level ancestor, never off another reply
            parent_key = parent.get("parent_id") or str(parent["_id"])

        comment = Comment(content=content, user_id=principal.id, video_id=video_key, parent_id=parent_key)
        comment_id = self._database.create_document("comment", comment)

        if video.get("teacher_id") != principal.id:
            self._fanout.emit(
                video["teacher_id"],
                "New Comment",
                f'{principal.name} commented on your video "{video.get("title", "")}"',
                VideoCommentPayload(video_id=video_key, comment_id=comment_id, commented_by=principal.id),
            )
        return serialize(self._comment(comment_id))

    def list_comments(
        self,
        principal: Principal,
        *,
        video_id: Optional[str] = None,
        search: Optional[str] = None,
        **page_args: Any,
    ) -> Page:
        query: Dict[str, Any] = {}
        if video_id:
            video = self._visible_video(principal, video_id)
            query["video_id"] = str(video["_id"])
        elif not principal.is_admin:
            raise ValidationError("videoId is required")
        if search:
            query["content"] = {"$regex": re.escape(search), "$options": "i"}
        return paginate(self._database["comment"], query, transform=serialize, **page_args)

    def update_comment(self, principal: Principal, comment_id: str, text: str) -> dict:
        content = (text or "").strip()
        if not content:
            raise ValidationError("Comment content is required")
        comment = self._comment(comment_id)
        if comment["user_id"] != principal.id:
            raise Forbidden("Not authorized")
        updated = self._database["comment"].find_one_and_update(
            {"_id": comment["_id"]},
            {"$set": {"content": content, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return serialize(updated)

    def delete_comment(self, principal: Principal, comment_id: str) -> int:
        comment = self._comment(comment_id)
        if comment["user_id"] != principal.id and not principal.is_admin:
            raise Forbidden("Not authorized")
        return self._delete_comment_trees([comment["_id"]])

    def bulk_delete_comments(self, principal: Principal, comment_ids: Iterable[str]) -> int:
        require_role(principal, "admin")
        ids = [object_id(value, "comment id") for value in comment_ids]
        if not ids:
            raise ValidationError("Please provide an array of comment IDs")
        return self._delete_comment_trees(ids)

    def _delete_comment_trees(self, roots) -> int:
        root_keys = [str(value) for value in roots]
        reply_keys = [
            str(reply["_id"])
            for reply in self._database["comment"].find({"parent_id": {"$in": root_keys}}, {"_id": 1})
        ]
        # one statement removes the comments and every reply that points at them
        deleted = self._database["comment"].delete_many(
            {"$or": [{"_id": {"$in": list(roots)}}, {"parent_id": {"$in": root_keys}}]}
        ).deleted_count
        self._database["report"].delete_many({"comment_id": {"$in": root_keys + reply_keys}})
        return deleted

    def toggle_comment_like(self, principal: Principal, comment_id: str) -> CommentState:
        comment = self._visible_comment(principal, comment_id)
        added = self._database["comment"].update_one(
            {"_id": comment["_id"], "likes": {"$nin": [principal.id]}},
            {"$addToSet": {"likes": principal.id}},
        )
        liked = added.modified_count == 1
        if not liked:
            self._database["comment"].update_one({"_id": comment["_id"]}, {"$pull": {"likes": principal.id}})
        elif comment["user_id"] != principal.id:
            self._fanout.emit(
                comment["user_id"],
                "New Like",
                f"{principal.name} liked your comment",
                CommentLikePayload(
                    video_id=comment["video_id"], comment_id=str(comment["_id"]), liked_by=principal.id
                ),
            )
        current = self._comment(comment_id)
        return CommentState(liked=liked, likes_count=len(current.get("likes", [])), comment=serialize(current))

    # Reports

    def create_report(
        self, principal: Principal, comment_id: str, reason: str, details: Optional[str] = None
    ) -> dict:
        comment = self._comment(comment_id)
        if comment["user_id"] == principal.id:
            raise SelfReport()
        self._visible_video(principal, comment["video_id"])
        if reason not in REPORT_REASONS:
            raise ValidationError(f"Reason must be one of {', '.join(REPORT_REASONS)}")
        details = (details or "").strip() or None
        if reason == "other" and not details:
            raise ValidationError("Details are required when the reason is 'other'")

        key = {"comment_id": str(comment["_id"]), "user_id": principal.id}
        if self._database["report"].find_one(key):
            raise DuplicateReport()
        report = Report(**key, reason=reason, details=details if reason == "other" else None)
        try:
            report_id = self._database.create_document("report", report)
        except PyMongoError as error:
            if is_duplicate_key(error):
                raise DuplicateReport() from error
            raise
        return serialize(self._database["report"].find_one({"_id": object_id(report_id)}))

    def list_reports(
        self,
        principal: Principal,
        *,
        status: Optional[str] = None,
        comment_id: Optional[str] = None,
        **page_args: Any,
    ) -> Page:
        require_role(principal, "admin")
        query: Dict[str, Any] = {}
        if status:
            query["status"] = status
        if comment_id:
            query["comment_id"] = comment_id
        return paginate(self._database["report"], query, transform=serialize, **page_args)

    def update_report_status(self, principal: Principal, report_id: str, status: str) -> dict:
        require_role(principal, "admin")
        if status not in REVIEW_STATUSES:
            raise ValidationError("Invalid status value")
        report_key = object_id(report_id, "report id")
        updated = self._database["report"].find_one_and_update(
            {"_id": report_key, "status": "pending"},
            {"$set": {"status": status, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            existing = self._database["report"].find_one({"_id": report_key})
            if existing is None:
                raise NotFound("Report not found")
            raise Conflict(f"Report has already been {existing['status']}")
        return serialize(updated)

    def cancel_report(self, principal: Principal, comment_id: str) -> None:
        removed = self._database["report"].find_one_and_delete(
            {"comment_id": str(comment_id), "user_id": principal.id}
        )
        if removed is None:
            raise NotFound("Report not found")

    def report_count(self, principal: Principal, comment_id: str) -> int:
        comment = self._visible_comment(principal, comment_id)
        return self._database["report"].count_documents({"comment_id": str(comment["_id"])})

    def has_reported(self, principal: Principal, comment_id: str) -> bool:
        comment = self._visible_comment(principal, comment_id)
        return self._database["report"].count_documents(
            {"comment_id": str(comment["_id"]), "user_id": principal.id}
        ) > 0

    def own_report(self, principal: Principal, comment_id: str) -> dict:
        comment = self._visible_comment(principal, comment_id)
        report = self._database["report"].find_one({"comment_id": str(comment["_id"]), "user_id": principal.id})
        if report is None:
            raise NotFound("Report not found")
        return serialize(report)


__all__ = ["CommentState", "EngagementLedger"]
