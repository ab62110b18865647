from __future__ import annotations

import itertools
import sys
from dataclasses import replace
from pathlib import Path

import mongomock
import pytest
from bson import ObjectId

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from access import Principal
from config import Settings
from content import NoticeBoard, PlaylistShelf, VideoCatalog
from database import Database
from identity import IdentityService
from ledger import EngagementLedger
from media import LocalObjectStorage
from notes import NoteBook
from notifications import NotificationFanout, NotificationInbox
from questions import QuestionBoard

PASSWORD = "secret123"


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_name="portal_test",
        secret_key="test-secret",
        bcrypt_rounds=4,
        media_root=tmp_path / "media",
        media_transfer_timeout=5.0,
        fanout_workers=0,
    )


@pytest.fixture()
def database() -> Database:
    client = mongomock.MongoClient(tz_aware=True)
    db = Database(client["portal_test"])
    db.ensure_indexes()
    return db


@pytest.fixture()
def storage(settings: Settings) -> LocalObjectStorage:
    return LocalObjectStorage(settings.media_root, settings.media_base_url)


@pytest.fixture()
def fanout(database: Database) -> NotificationFanout:
    return NotificationFanout(database)


@pytest.fixture()
def identity(database: Database, settings: Settings, fanout: NotificationFanout) -> IdentityService:
    return IdentityService(database, settings, fanout)


@pytest.fixture()
def inbox(database: Database) -> NotificationInbox:
    return NotificationInbox(database)


@pytest.fixture()
def ledger(database: Database, fanout: NotificationFanout) -> EngagementLedger:
    return EngagementLedger(database, fanout)


@pytest.fixture()
def videos(database: Database, fanout: NotificationFanout, storage: LocalObjectStorage) -> VideoCatalog:
    return VideoCatalog(database, fanout, storage)


@pytest.fixture()
def notices(database: Database, fanout: NotificationFanout, storage: LocalObjectStorage) -> NoticeBoard:
    return NoticeBoard(database, fanout, storage)


@pytest.fixture()
def playlists(database: Database, fanout: NotificationFanout) -> PlaylistShelf:
    return PlaylistShelf(database, fanout)


@pytest.fixture()
def notes(database: Database) -> NoteBook:
    return NoteBook(database)


@pytest.fixture()
def questions(database: Database, fanout: NotificationFanout) -> QuestionBoard:
    return QuestionBoard(database, fanout)


@pytest.fixture()
def make_principal(identity: IdentityService, database: Database):
    counter = itertools.count()

    def _make(
        role: str = "student",
        *,
        branch: str = "CSE",
        year: str = "2nd",
        department: str = "Physics",
        approved: bool = True,
    ) -> Principal:
        index = next(counter)
        principal = identity.register(
            f"{role.title()} {index}",
            f"{role}{index}@college.edu",
            PASSWORD,
            role,
            branch=branch,
            year=year,
            department=department,
            allow_admin=True,
        )
        if principal.is_approved != approved:
            database["user"].update_one({"_id": ObjectId(principal.id)}, {"$set": {"is_approved": approved}})
            principal = replace(principal, is_approved=approved)
        return principal

    return _make


@pytest.fixture()
def make_video(videos: VideoCatalog):
    def _make(teacher: Principal, **overrides) -> dict:
        data = {
            "title": "Stellar Evolution",
            "description": "From nebula to white dwarf",
            "video_url": "/media/videos/stellar.mp4",
            "subject": "Astronomy",
            "topic": "Stars",
            "branch": "CSE",
            "year": "2nd",
        }
        data.update(overrides)
        return videos.create(teacher, data)

    return _make
