"""
Database Schemas for the Lecture Portal

Each Pydantic model represents a MongoDB collection. The collection name is the
lowercase of the class name (e.g., User -> "user"). References to other
documents are stored as ObjectId strings.
"""

from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field

Role = Literal["student", "teacher", "admin"]
Year = Literal["1st", "2nd", "3rd", "4th"]

YEARS = ("1st", "2nd", "3rd", "4th")
ALL = "All"

NOTICE_DURATIONS = {
    "3 days": 3,
    "7 days": 7,
    "14 days": 14,
    "30 days": 30,
    "3 months": 90,
    "6 months": 180,
    "1 year": 365,
    "never": None,
}
REPORT_REASONS = ("spam", "harassment", "off-topic", "inappropriate", "other")


class User(BaseModel):
    """
    Students, teachers and administrators
    Collection: "user"
    """
    name: str = Field(..., max_length=50, description="Full name")
    email: EmailStr = Field(..., description="Unique, lower-cased email address")
    role: Role = Field(..., description="Role in the system")
    hashed_password: str = Field(..., description="Bcrypt hashed password")
    branch: Optional[str] = Field(None, description="Branch (students)")
    year: Optional[Year] = Field(None, description="Year of study (students)")
    department: Optional[str] = Field(None, description="Department (teachers)")
    is_approved: bool = Field(False, description="Teachers wait for admin approval")
    profile_picture: str = Field("default-profile.jpg")


class Video(BaseModel):
    """
    Lecture videos uploaded by teachers
    Collection: "video"
    """
    title: str = Field(..., max_length=100)
    description: str = Field(..., max_length=500)
    video_url: str = Field(..., description="URL returned by object storage")
    media_key: Optional[str] = Field(None, description="Object storage key of the upload")
    thumbnail_url: str = Field("default-thumbnail.jpg")
    subject: str
    topic: str
    tags: List[str] = Field(default_factory=list)
    branch: str = Field(..., description="Target branch or 'All'")
    year: str = Field(..., description="Target year or 'All'")
    teacher_id: str = Field(..., description="ObjectId of the owning teacher as string")
    duration: float = Field(0, ge=0, description="Seconds")
    special_access: List[str] = Field(default_factory=list, description="Allow-listed principal ids")
    is_approved: bool = Field(True, description="Published flag")
    views: int = Field(0, ge=0)
    likes_count: int = Field(0, ge=0)


class NoticeExpiration(BaseModel):
    type: Literal["date", "duration"]
    date: Optional[datetime] = None
    duration: Optional[Literal["3 days", "7 days", "14 days", "30 days", "3 months", "6 months", "1 year", "never"]] = None


class Attachment(BaseModel):
    filename: str
    url: str
    key: str
    size: int = 0
    mimetype: Literal["application/pdf"] = "application/pdf"


class Notice(BaseModel):
    """
    Notices posted to a branch/year cohort
    Collection: "notice"
    """
    title: str = Field(..., max_length=100)
    content: str = Field(..., max_length=1000)
    category: Literal["General", "Academic", "Event", "Important", "Other"]
    branch: str = Field(..., description="Target branch or 'All'")
    year: str = Field(..., description="Target year or 'All'")
    priority: Literal["low", "normal", "high"] = "normal"
    expiration: NoticeExpiration
    attachments: List[Attachment] = Field(default_factory=list)
    teacher_id: str
    is_active: bool = True
    expires_at: Optional[datetime] = Field(None, description="Derived from expiration; None means never")


class PlaylistEntry(BaseModel):
    video_id: str
    order: int


class Playlist(BaseModel):
    """
    Ordered collections of videos
    Collection: "playlist"
    """
    title: str = Field(..., max_length=100)
    description: str = Field(..., max_length=500)
    thumbnail: str = "default-playlist.jpg"
    category: Literal["Lecture", "Tutorial", "Workshop", "Seminar", "Other"]
    branch: str
    year: str
    teacher_id: str
    videos: List[PlaylistEntry] = Field(default_factory=list)


class Like(BaseModel):
    """
    One row per (video, user); unique index on both
    Collection: "like"
    """
    video_id: str
    user_id: str


class View(BaseModel):
    """
    Aggregated watch statistics per (video, user)
    Collection: "view"
    """
    video_id: str
    user_id: str
    watch_time: float = 0
    completion_percentage: float = 0
    last_position: float = 0
    watched_at: Optional[datetime] = None


class Comment(BaseModel):
    """
    Comments and single-level replies on a video
    Collection: "comment"
    """
    content: str
    user_id: str
    video_id: str
    parent_id: Optional[str] = Field(None, description="None means a top-level comment")
    likes: List[str] = Field(default_factory=list, description="Ids of principals who liked it")


class Report(BaseModel):
    """
    A principal's report against someone else's comment
    Collection: "report"
    """
    comment_id: str
    user_id: str
    reason: Literal["spam", "harassment", "off-topic", "inappropriate", "other"]
    details: Optional[str] = None
    status: Literal["pending", "reviewed", "ignored"] = "pending"


class Note(BaseModel):
    """
    Student notes, standalone or attached to a video
    Collection: "note"
    """
    title: str = "Untitled Note"
    content: str = ""
    student_id: str
    video_id: Optional[str] = None
    timestamp: float = Field(0, ge=0, description="Position in the video, seconds")


class Answer(BaseModel):
    id: str
    content: str
    user_id: str
    created_at: datetime


class Question(BaseModel):
    """
    A question asked at a point in a video, with its answers embedded
    Collection: "question"
    """
    content: str
    user_id: str
    video_id: str
    timestamp: float = Field(0, ge=0, description="Position in the video, seconds")
    answers: List[Answer] = Field(default_factory=list)


# Notification payloads: one shape per notification type

class VideoLikePayload(BaseModel):
    type: Literal["video_like"] = "video_like"
    video_id: str
    liked_by: str


class CommentLikePayload(BaseModel):
    type: Literal["comment_like"] = "comment_like"
    video_id: str
    comment_id: str
    liked_by: str


class VideoCommentPayload(BaseModel):
    type: Literal["video_comment"] = "video_comment"
    video_id: str
    comment_id: str
    commented_by: str


class VideoAccessPayload(BaseModel):
    type: Literal["video_access_granted"] = "video_access_granted"
    video_id: str


class NoticePayload(BaseModel):
    type: Literal["notice_posted", "notice_updated"] = "notice_posted"
    notice_id: str
    category: str
    priority: str


class PlaylistPayload(BaseModel):
    type: Literal["playlist_updated"] = "playlist_updated"
    playlist_id: str
    video_id: Optional[str] = None


class QuestionPayload(BaseModel):
    type: Literal["question"] = "question"
    video_id: str
    question_id: str
    asked_by: str


class AnswerPayload(BaseModel):
    type: Literal["answer"] = "answer"
    video_id: str
    question_id: str
    answer_id: str
    answered_by: str


class SystemAnnouncementPayload(BaseModel):
    type: Literal["system_announcement"] = "system_announcement"
    approved: Optional[bool] = None


NotificationPayload = Annotated[
    Union[
        VideoLikePayload,
        CommentLikePayload,
        VideoCommentPayload,
        VideoAccessPayload,
        NoticePayload,
        PlaylistPayload,
        QuestionPayload,
        AnswerPayload,
        SystemAnnouncementPayload,
    ],
    Field(discriminator="type"),
]

NOTIFICATION_TYPES = (
    "video_like",
    "comment_like",
    "video_comment",
    "video_access_granted",
    "notice_posted",
    "notice_updated",
    "playlist_updated",
    "question",
    "answer",
    "system_announcement",
)


class Notification(BaseModel):
    """
    Per-recipient notifications created by fan-out
    Collection: "notification"
    """
    recipient_id: str
    type: str
    title: str
    message: str
    data: NotificationPayload
    is_read: bool = False
    priority: Literal["low", "medium", "high"] = "medium"
