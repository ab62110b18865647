"""Timestamped questions on videos, answered in place."""

import logging
from typing import Any, Optional

from bson import ObjectId

from access import ContentItem, Principal, require_view
from database import Database, object_id, serialize, utcnow
from errors import NotFound, ValidationError
from notifications import NotificationFanout
from pagination import Page, paginate
from schemas import Answer, AnswerPayload, Question, QuestionPayload

LOGGER = logging.getLogger(__name__)

COLLECTION = "question"


class QuestionBoard:
    def __init__(self, database: Database, fanout: NotificationFanout):
        self._database = database
        self._fanout = fanout

    @property
    def _questions(self):
        return self._database[COLLECTION]

    def _visible_video(self, principal: Principal, video_id: str) -> dict:
        video = self._database["video"].find_one({"_id": object_id(video_id, "video id")})
        if video is None:
            raise NotFound("Video not found")
        require_view(principal, ContentItem.from_document("video", video))
        return video

    def _visible_question(self, principal: Principal, question_id: str) -> dict:
        question = self._questions.find_one({"_id": object_id(question_id, "question id")})
        if question is None:
            raise NotFound("Question not found")
        self._visible_video(principal, question["video_id"])
        return question

    def ask(
        self, principal: Principal, video_id: str, content: str, timestamp: Optional[float] = None
    ) -> dict:
        """Post a question on a video the principal can see; the video owner is notified."""
        content = (content or "").strip()
        if not content:
            raise ValidationError("Question content is required")
        if timestamp is not None and timestamp < 0:
            raise ValidationError("timestamp cannot be negative")
        video = self._visible_video(principal, video_id)
        video_key = str(video["_id"])

        question = Question(content=content, user_id=principal.id, video_id=video_key, timestamp=timestamp or 0)
        question_id = self._database.create_document(COLLECTION, question)

        if video.get("teacher_id") != principal.id:
            self._fanout.emit(
                video["teacher_id"],
                "New Question",
                f'{principal.name} asked a question on your video "{video.get("title", "")}"',
                QuestionPayload(video_id=video_key, question_id=question_id, asked_by=principal.id),
            )
        return serialize(self._questions.find_one({"_id": object_id(question_id)}))

    def list(self, principal: Principal, video_id: str, **page_args: Any) -> Page:
        video = self._visible_video(principal, video_id)
        return paginate(
            self._questions,
            {"video_id": str(video["_id"])},
            allowed_sort=("created_at", "timestamp"),
            transform=serialize,
            **page_args,
        )

    def get(self, principal: Principal, question_id: str) -> dict:
        return serialize(self._visible_question(principal, question_id))

    def answer(self, principal: Principal, question_id: str, content: str) -> dict:
        content = (content or "").strip()
        if not content:
            raise ValidationError("Answer content is required")
        question = self._visible_question(principal, question_id)

        answer = Answer(id=str(ObjectId()), content=content, user_id=principal.id, created_at=utcnow())
        self._questions.update_one(
            {"_id": question["_id"]},
            {"$push": {"answers": answer.model_dump()}, "$set": {"updated_at": answer.created_at}},
        )
        LOGGER.debug("Question %s answered by %s", question_id, principal.id)

        if question["user_id"] != principal.id:
            self._fanout.emit(
                question["user_id"],
                "New Answer",
                f"{principal.name} answered your question",
                AnswerPayload(
                    video_id=question["video_id"],
                    question_id=str(question["_id"]),
                    answer_id=answer.id,
                    answered_by=principal.id,
                ),
            )
        return serialize(answer.model_dump())


__all__ = ["QuestionBoard"]
