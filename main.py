import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, List, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Query, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, EmailStr
from starlette.exceptions import HTTPException as StarletteHTTPException

from access import Principal
from config import Settings
from content import NoticeBoard, PlaylistShelf, VideoCatalog
from database import Database
from errors import PortalError
from identity import IdentityService
from ledger import EngagementLedger
from logging_utils import configure_logging
from media import LocalObjectStorage, ObjectStorage
from notes import NoteBook
from notifications import NotificationFanout, NotificationInbox
from questions import QuestionBoard
from schemas import NoticeExpiration

LOGGER = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")
router = APIRouter()


@dataclass
class AppContext:
    settings: Settings
    database: Database
    storage: ObjectStorage
    fanout: NotificationFanout
    identity: IdentityService
    inbox: NotificationInbox
    ledger: EngagementLedger
    videos: VideoCatalog
    notices: NoticeBoard
    playlists: PlaylistShelf
    notes: NoteBook
    questions: QuestionBoard
    executor: Optional[ThreadPoolExecutor] = None


# Schemas
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str
    role: str = "student"
    branch: Optional[str] = None
    year: Optional[str] = None
    department: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    branch: Optional[str] = None
    year: Optional[str] = None
    department: Optional[str] = None
    profile_picture: Optional[str] = None


class PasswordChange(BaseModel):
    current_password: str
    new_password: str


class ApprovalRequest(BaseModel):
    approved: bool


class BulkApprovalRequest(BaseModel):
    user_ids: List[str]
    approved: bool


class BulkIdsRequest(BaseModel):
    ids: List[str]


class VideoCreate(BaseModel):
    title: str
    description: str
    video_url: str
    subject: str
    topic: str
    branch: str
    year: str
    media_key: Optional[str] = None
    thumbnail_url: Optional[str] = None
    tags: Optional[List[str]] = None
    duration: Optional[float] = None
    special_access: Optional[List[str]] = None
    is_approved: Optional[bool] = None


class VideoUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    thumbnail_url: Optional[str] = None
    subject: Optional[str] = None
    topic: Optional[str] = None
    tags: Optional[List[str]] = None
    branch: Optional[str] = None
    year: Optional[str] = None
    duration: Optional[float] = None
    is_approved: Optional[bool] = None


class SpecialAccessRequest(BaseModel):
    student_ids: List[str]


class ViewRequest(BaseModel):
    watch_time: Optional[float] = None
    completion_percentage: Optional[float] = None
    last_position: Optional[float] = None


class CommentCreate(BaseModel):
    content: str
    parent_id: Optional[str] = None


class CommentUpdate(BaseModel):
    content: str


class ReportCreate(BaseModel):
    reason: str
    details: Optional[str] = None


class ReportStatusUpdate(BaseModel):
    status: str


class QuestionCreate(BaseModel):
    content: str
    timestamp: Optional[float] = None


class AnswerCreate(BaseModel):
    content: str


class NoticeCreate(BaseModel):
    title: str
    content: str
    category: str
    branch: str
    year: str
    expiration: NoticeExpiration
    priority: Optional[str] = None


class NoticeUpdate(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    category: Optional[str] = None
    branch: Optional[str] = None
    year: Optional[str] = None
    priority: Optional[str] = None
    expiration: Optional[NoticeExpiration] = None
    is_active: Optional[bool] = None


class PlaylistCreate(BaseModel):
    title: str
    description: str
    category: str
    branch: str
    year: str
    thumbnail: Optional[str] = None


class PlaylistUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    branch: Optional[str] = None
    year: Optional[str] = None
    thumbnail: Optional[str] = None


class PlaylistVideoRequest(BaseModel):
    video_id: str


class NoteSave(BaseModel):
    content: str = ""
    title: Optional[str] = None
    video_id: Optional[str] = None
    timestamp: Optional[float] = None


class NoteUpdate(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    timestamp: Optional[float] = None


# Dependencies

def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_current_principal(
    token: str = Depends(oauth2_scheme), context: AppContext = Depends(get_context)
) -> Principal:
    return context.identity.verify(token)


def page_params(
    page: Optional[str] = None,
    limit: Optional[str] = None,
    sort: Optional[str] = None,
    order: Optional[str] = None,
) -> dict:
    # raw strings: the paginator falls back to defaults on garbage
    return {"page": page, "limit": limit, "sort": sort, "order": order}


def ok(data: Any = None, **extra: Any) -> dict:
    body = {"success": True, "data": data}
    body.update(extra)
    return body


# Public endpoints
@router.get("/")
def read_root():
    return {"message": "Lecture Portal API is running"}


@router.get("/test")
def test_database(context: AppContext = Depends(get_context)):
    response = {
        "backend": "running",
        "database": "not available",
        "database_name": context.database.name,
        "collections": [],
    }
    try:
        response["collections"] = context.database.db.list_collection_names()[:10]
        response["database"] = "connected"
    except Exception as error:  # noqa: BLE001 - health check reports instead of failing
        LOGGER.warning("Database health check failed: %s", error)
        response["database"] = "error"
    return response


# Auth routes
@router.post("/auth/register", status_code=status.HTTP_201_CREATED)
def register_user(payload: RegisterRequest, context: AppContext = Depends(get_context)):
    principal = context.identity.register(
        payload.name,
        payload.email,
        payload.password,
        payload.role,
        branch=payload.branch,
        year=payload.year,
        department=payload.department,
    )
    user = context.identity.get_me(principal)
    if not principal.is_approved:
        return ok(user, message="Registration successful. Please wait for admin approval.")
    return ok(user, token=context.identity.tokens.issue(principal))


@router.post("/auth/token", response_model=Token)
def login_for_access_token(
    form_data: OAuth2PasswordRequestForm = Depends(), context: AppContext = Depends(get_context)
):
    # OAuth2 form uses the username field for the email
    access_token = context.identity.authenticate(form_data.username, form_data.password)
    return {"access_token": access_token, "token_type": "bearer"}


@router.post("/auth/login")
def login(payload: LoginRequest, context: AppContext = Depends(get_context)):
    token = context.identity.authenticate(payload.email, payload.password)
    principal = context.identity.verify(token)
    return ok(context.identity.get_me(principal), token=token)


@router.get("/auth/me")
def read_users_me(
    principal: Principal = Depends(get_current_principal), context: AppContext = Depends(get_context)
):
    return ok(context.identity.get_me(principal))


@router.put("/auth/profile")
def update_profile(
    payload: ProfileUpdate,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.identity.update_profile(principal, payload.model_dump(exclude_none=True)))


@router.put("/auth/password")
def change_password(
    payload: PasswordChange,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    token = context.identity.change_password(principal, payload.current_password, payload.new_password)
    return ok(token=token)


# Account administration
@router.get("/users")
def list_users(
    role: Optional[str] = None,
    approved: Optional[bool] = None,
    search: Optional[str] = None,
    paging: dict = Depends(page_params),
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    result = context.identity.list_principals(
        principal, role=role, approved=approved, search=search, page=paging["page"], limit=paging["limit"]
    )
    return result.as_response()


@router.put("/users/approval")
def bulk_approve_users(
    payload: BulkApprovalRequest,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    updated = context.identity.bulk_set_approval(principal, payload.user_ids, payload.approved)
    return ok({"updated": updated})


@router.post("/users/bulk-delete")
def bulk_delete_users(
    payload: BulkIdsRequest,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok({"deleted": context.identity.bulk_delete_principals(principal, payload.ids)})


@router.get("/users/{user_id}")
def get_user(
    user_id: str, principal: Principal = Depends(get_current_principal), context: AppContext = Depends(get_context)
):
    return ok(context.identity.get_principal(principal, user_id))


@router.put("/users/{user_id}/approval")
def approve_user(
    user_id: str,
    payload: ApprovalRequest,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.identity.set_approval(principal, user_id, payload.approved))


@router.delete("/users/{user_id}")
def delete_user(
    user_id: str, principal: Principal = Depends(get_current_principal), context: AppContext = Depends(get_context)
):
    context.identity.delete_principal(principal, user_id)
    return ok({})


# Videos
@router.post("/videos/upload")
async def upload_video(
    file: UploadFile = File(...),
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    stored = await context.videos.upload_media(principal, file, timeout=context.settings.media_transfer_timeout)
    return ok(stored)


@router.post("/videos", status_code=status.HTTP_201_CREATED)
def create_video(
    payload: VideoCreate,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.videos.create(principal, payload.model_dump(exclude_none=True)))


@router.get("/videos")
def list_videos(
    subject: Optional[str] = None,
    search: Optional[str] = None,
    teacher_id: Optional[str] = None,
    paging: dict = Depends(page_params),
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    result = context.videos.list(principal, subject=subject, search=search, teacher_id=teacher_id, **paging)
    return result.as_response()


@router.get("/videos/{video_id}")
def get_video(
    video_id: str, principal: Principal = Depends(get_current_principal), context: AppContext = Depends(get_context)
):
    return ok(context.videos.get(principal, video_id))


@router.put("/videos/{video_id}")
def update_video(
    video_id: str,
    payload: VideoUpdate,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.videos.update(principal, video_id, payload.model_dump(exclude_none=True)))


@router.delete("/videos/{video_id}")
def delete_video(
    video_id: str, principal: Principal = Depends(get_current_principal), context: AppContext = Depends(get_context)
):
    context.videos.delete(principal, video_id)
    return ok({})


@router.put("/videos/{video_id}/special-access")
def update_special_access(
    video_id: str,
    payload: SpecialAccessRequest,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.videos.update_special_access(principal, video_id, payload.student_ids))


# Likes
@router.post("/videos/{video_id}/like")
def toggle_like(
    video_id: str, principal: Principal = Depends(get_current_principal), context: AppContext = Depends(get_context)
):
    return ok(context.ledger.toggle_like(principal, video_id))


@router.get("/videos/{video_id}/likes")
def list_video_likes(
    video_id: str,
    paging: dict = Depends(page_params),
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return context.ledger.list_video_likes(principal, video_id, **paging).as_response()


@router.get("/likes/me")
def list_liked_videos(
    paging: dict = Depends(page_params),
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return context.ledger.list_liked_videos(principal, **paging).as_response()


# Views
@router.post("/videos/{video_id}/views")
def record_view(
    video_id: str,
    payload: ViewRequest,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    view = context.ledger.record_view(
        principal,
        video_id,
        watch_time=payload.watch_time,
        completion_percentage=payload.completion_percentage,
        last_position=payload.last_position,
    )
    return ok(view)


@router.get("/videos/{video_id}/views")
def list_video_views(
    video_id: str,
    paging: dict = Depends(page_params),
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return context.ledger.list_video_views(principal, video_id, **paging).as_response()


@router.get("/videos/{video_id}/views/stats")
def view_stats(
    video_id: str, principal: Principal = Depends(get_current_principal), context: AppContext = Depends(get_context)
):
    return ok(context.ledger.view_stats(principal, video_id))


@router.get("/views/history")
def watch_history(
    paging: dict = Depends(page_params),
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return context.ledger.watch_history(principal, **paging).as_response()


@router.delete("/views/history")
def clear_watch_history(
    principal: Principal = Depends(get_current_principal), context: AppContext = Depends(get_context)
):
    return ok({"deleted": context.ledger.clear_watch_history(principal)})


# Comments
@router.post("/videos/{video_id}/comments", status_code=status.HTTP_201_CREATED)
def add_comment(
    video_id: str,
    payload: CommentCreate,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.ledger.add_comment(principal, video_id, payload.content, payload.parent_id))


@router.get("/comments")
def list_comments(
    video_id: Optional[str] = None,
    search: Optional[str] = None,
    paging: dict = Depends(page_params),
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return context.ledger.list_comments(principal, video_id=video_id, search=search, **paging).as_response()


@router.post("/comments/bulk-delete")
def bulk_delete_comments(
    payload: BulkIdsRequest,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok({"deleted": context.ledger.bulk_delete_comments(principal, payload.ids)})


@router.put("/comments/{comment_id}")
def update_comment(
    comment_id: str,
    payload: CommentUpdate,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.ledger.update_comment(principal, comment_id, payload.content))


@router.delete("/comments/{comment_id}")
def delete_comment(
    comment_id: str,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok({"deleted": context.ledger.delete_comment(principal, comment_id)})


@router.post("/comments/{comment_id}/like")
def toggle_comment_like(
    comment_id: str,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.ledger.toggle_comment_like(principal, comment_id).as_dict())


# Reports
@router.post("/comments/{comment_id}/reports", status_code=status.HTTP_201_CREATED)
def create_report(
    comment_id: str,
    payload: ReportCreate,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.ledger.create_report(principal, comment_id, payload.reason, payload.details))


@router.get("/comments/{comment_id}/reports/count")
def report_count(
    comment_id: str,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok({"count": context.ledger.report_count(principal, comment_id)})


@router.get("/comments/{comment_id}/reports/status")
def has_reported(
    comment_id: str,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok({"hasReported": context.ledger.has_reported(principal, comment_id)})


@router.get("/comments/{comment_id}/reports/me")
def own_report(
    comment_id: str,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.ledger.own_report(principal, comment_id))


@router.delete("/comments/{comment_id}/reports/me")
def cancel_report(
    comment_id: str,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    context.ledger.cancel_report(principal, comment_id)
    return ok({})


@router.get("/reports")
def list_reports(
    status_filter: Optional[str] = Query(None, alias="status"),
    comment_id: Optional[str] = None,
    paging: dict = Depends(page_params),
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    result = context.ledger.list_reports(principal, status=status_filter, comment_id=comment_id, **paging)
    return result.as_response()


@router.put("/reports/{report_id}")
def update_report_status(
    report_id: str,
    payload: ReportStatusUpdate,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.ledger.update_report_status(principal, report_id, payload.status))


# Questions
@router.post("/videos/{video_id}/questions", status_code=status.HTTP_201_CREATED)
def ask_question(
    video_id: str,
    payload: QuestionCreate,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.questions.ask(principal, video_id, payload.content, payload.timestamp))


@router.get("/videos/{video_id}/questions")
def list_questions(
    video_id: str,
    paging: dict = Depends(page_params),
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return context.questions.list(principal, video_id, **paging).as_response()


@router.get("/questions/{question_id}")
def get_question(
    question_id: str,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.questions.get(principal, question_id))


@router.post("/questions/{question_id}/answers")
def answer_question(
    question_id: str,
    payload: AnswerCreate,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.questions.answer(principal, question_id, payload.content))


# Notifications
@router.get("/notifications")
def list_notifications(
    type: Optional[str] = None,
    read: Optional[bool] = None,
    paging: dict = Depends(page_params),
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return context.inbox.list(principal, type=type, read=read, **paging).as_response()


@router.get("/notifications/unread-count")
def unread_count(principal: Principal = Depends(get_current_principal), context: AppContext = Depends(get_context)):
    return ok({"count": context.inbox.unread_count(principal)})


@router.put("/notifications/read-all")
def mark_all_read(principal: Principal = Depends(get_current_principal), context: AppContext = Depends(get_context)):
    return ok({"updated": context.inbox.mark_all_read(principal)})


@router.put("/notifications/{notification_id}/read")
def mark_read(
    notification_id: str,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.inbox.mark_read(principal, notification_id))


@router.delete("/notifications")
def delete_all_notifications(
    principal: Principal = Depends(get_current_principal), context: AppContext = Depends(get_context)
):
    return ok({"deleted": context.inbox.delete_all(principal)})


@router.delete("/notifications/{notification_id}")
def delete_notification(
    notification_id: str,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    context.inbox.delete(principal, notification_id)
    return ok({})


# Notices
@router.post("/notices", status_code=status.HTTP_201_CREATED)
def create_notice(
    payload: NoticeCreate,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.notices.create(principal, payload.model_dump(exclude_none=True)))


@router.get("/notices")
def list_notices(
    category: Optional[str] = None,
    priority: Optional[str] = None,
    branch: Optional[str] = None,
    year: Optional[str] = None,
    status_filter: Optional[Literal["active", "expired", "all"]] = Query(None, alias="status"),
    mine: bool = False,
    paging: dict = Depends(page_params),
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    result = context.notices.list(
        principal,
        category=category,
        priority=priority,
        branch=branch,
        year=year,
        status=status_filter,
        mine=mine,
        **paging,
    )
    return result.as_response()


@router.get("/notices/{notice_id}")
def get_notice(
    notice_id: str, principal: Principal = Depends(get_current_principal), context: AppContext = Depends(get_context)
):
    return ok(context.notices.get(principal, notice_id))


@router.put("/notices/{notice_id}")
def update_notice(
    notice_id: str,
    payload: NoticeUpdate,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.notices.update(principal, notice_id, payload.model_dump(exclude_none=True)))


@router.delete("/notices/{notice_id}")
def delete_notice(
    notice_id: str, principal: Principal = Depends(get_current_principal), context: AppContext = Depends(get_context)
):
    context.notices.delete(principal, notice_id)
    return ok({})


@router.post("/notices/{notice_id}/attachments")
async def add_notice_attachment(
    notice_id: str,
    file: UploadFile = File(...),
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    notice = await context.notices.add_attachment(
        principal, notice_id, file, timeout=context.settings.media_transfer_timeout
    )
    return ok(notice)


# Playlists
@router.post("/playlists", status_code=status.HTTP_201_CREATED)
def create_playlist(
    payload: PlaylistCreate,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.playlists.create(principal, payload.model_dump(exclude_none=True)))


@router.get("/playlists")
def list_playlists(
    category: Optional[str] = None,
    teacher_id: Optional[str] = None,
    search: Optional[str] = None,
    paging: dict = Depends(page_params),
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    result = context.playlists.list(principal, category=category, teacher_id=teacher_id, search=search, **paging)
    return result.as_response()


@router.get("/playlists/{playlist_id}")
def get_playlist(
    playlist_id: str,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.playlists.get(principal, playlist_id))


@router.put("/playlists/{playlist_id}")
def update_playlist(
    playlist_id: str,
    payload: PlaylistUpdate,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.playlists.update(principal, playlist_id, payload.model_dump(exclude_none=True)))


@router.delete("/playlists/{playlist_id}")
def delete_playlist(
    playlist_id: str,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    context.playlists.delete(principal, playlist_id)
    return ok({})


@router.post("/playlists/{playlist_id}/videos")
def add_playlist_video(
    playlist_id: str,
    payload: PlaylistVideoRequest,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.playlists.add_video(principal, playlist_id, payload.video_id))


@router.delete("/playlists/{playlist_id}/videos/{video_id}")
def remove_playlist_video(
    playlist_id: str,
    video_id: str,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.playlists.remove_video(principal, playlist_id, video_id))


# Notes
@router.post("/notes")
def save_note(
    payload: NoteSave,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    note = context.notes.save(
        principal,
        content=payload.content,
        title=payload.title,
        video_id=payload.video_id,
        timestamp=payload.timestamp,
    )
    return ok(note)


@router.get("/notes")
def list_notes(
    video_id: Optional[str] = None,
    search: Optional[str] = None,
    paging: dict = Depends(page_params),
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return context.notes.list(principal, video_id=video_id, search=search, **paging).as_response()


@router.get("/notes/{note_id}")
def get_note(
    note_id: str, principal: Principal = Depends(get_current_principal), context: AppContext = Depends(get_context)
):
    return ok(context.notes.get(principal, note_id))


@router.put("/notes/{note_id}")
def update_note(
    note_id: str,
    payload: NoteUpdate,
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_context),
):
    return ok(context.notes.update(principal, note_id, payload.model_dump(exclude_none=True)))


@router.delete("/notes/{note_id}")
def delete_note(
    note_id: str, principal: Principal = Depends(get_current_principal), context: AppContext = Depends(get_context)
):
    context.notes.delete(principal, note_id)
    return ok({})


# Error handlers

def _error_response(status_code: int, message: str, headers: Optional[dict] = None) -> JSONResponse:
    if status_code == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer", **(headers or {})}
    return JSONResponse(status_code=status_code, content={"success": False, "error": message}, headers=headers)


async def portal_error_handler(request: Request, error: PortalError) -> JSONResponse:
    if error.status_code >= 500:
        LOGGER.error("%s %s failed: %s", request.method, request.url.path, error.message)
    return _error_response(error.status_code, error.message)


async def request_validation_handler(request: Request, error: RequestValidationError) -> JSONResponse:
    first = error.errors()[0] if error.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return _error_response(status.HTTP_400_BAD_REQUEST, f"{location}: {message}" if location else message)


async def http_error_handler(request: Request, error: StarletteHTTPException) -> JSONResponse:
    return _error_response(error.status_code, str(error.detail), getattr(error, "headers", None))


# App setup

def build_context(
    settings: Settings, database: Database, storage: ObjectStorage
) -> AppContext:
    executor = None
    if settings.fanout_workers > 0:
        executor = ThreadPoolExecutor(max_workers=settings.fanout_workers, thread_name_prefix="fanout")
    fanout = NotificationFanout(database, executor)
    return AppContext(
        settings=settings,
        database=database,
        storage=storage,
        fanout=fanout,
        identity=IdentityService(database, settings, fanout),
        inbox=NotificationInbox(database),
        ledger=EngagementLedger(database, fanout),
        videos=VideoCatalog(database, fanout, storage),
        notices=NoticeBoard(database, fanout, storage),
        playlists=PlaylistShelf(database, fanout),
        notes=NoteBook(database),
        questions=QuestionBoard(database, fanout),
        executor=executor,
    )


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    storage: Optional[ObjectStorage] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    database = database or Database.connect(settings)
    if storage is None:
        storage = LocalObjectStorage(settings.media_root, settings.media_base_url)

    database.ensure_indexes()
    context = build_context(settings, database, storage)
    if settings.admin_email and settings.admin_password:
        context.identity.ensure_admin(settings.admin_email, settings.admin_password, settings.admin_name)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if context.executor is not None:
            # let queued notifications land before the process exits
            context.executor.shutdown(wait=True)

    app = FastAPI(title="Lecture Portal API", lifespan=lifespan)
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(PortalError, portal_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.include_router(router)

    if isinstance(storage, LocalObjectStorage) and settings.media_base_url.startswith("/"):
        storage.root.mkdir(parents=True, exist_ok=True)
        app.mount(settings.media_base_url, StaticFiles(directory=str(storage.root)), name="media")

    LOGGER.info("Lecture Portal API ready (database=%s)", database.name)
    return app


if __name__ == "__main__":
    import uvicorn

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run("main:create_app", factory=True, host="0.0.0.0", port=settings.port)
