from datetime import timedelta

import pytest
from bson import ObjectId

from database import utcnow
from errors import Conflict, Forbidden, NotFound, ValidationError


def _ids(page) -> set:
    return {item["id"] for item in page.items}


def test_students_list_only_visible_videos(videos, make_principal, make_video) -> None:
    teacher = make_principal("teacher")
    student = make_principal(branch="CSE", year="2nd")
    outsider = make_principal(branch="ECE", year="2nd")

    visible = make_video(teacher)
    everyone = make_video(teacher, branch="All", year="All")
    hidden = make_video(teacher, branch="ME", year="4th")
    unpublished = make_video(teacher, is_approved=False)
    granted = make_video(teacher, branch="ME", year="1st", special_access=[student.id])

    assert _ids(videos.list(student)) == {visible["id"], everyone["id"], granted["id"]}
    assert _ids(videos.list(outsider)) == {everyone["id"]}
    assert hidden["id"] not in _ids(videos.list(student))
    assert unpublished["id"] not in _ids(videos.list(student))


def test_teachers_list_their_own_videos_admins_everything(videos, make_principal, make_video) -> None:
    first, second = make_principal("teacher"), make_principal("teacher")
    admin = make_principal("admin")
    mine = make_video(first)
    theirs = make_video(second)

    assert _ids(videos.list(first)) == {mine["id"]}
    assert _ids(videos.list(admin)) == {mine["id"], theirs["id"]}
    assert _ids(videos.list(admin, teacher_id=second.id)) == {theirs["id"]}


def test_student_cannot_create_video(videos, make_principal) -> None:
    with pytest.raises(Forbidden):
        videos.create(make_principal(), {"title": "x"})


def test_video_year_must_be_known(make_principal, make_video) -> None:
    with pytest.raises(ValidationError):
        make_video(make_principal("teacher"), year="5th")


def test_get_video_guards_visibility(videos, make_principal, make_video) -> None:
    teacher = make_principal("teacher")
    student = make_principal()
    outsider = make_principal(branch="ECE")
    video = make_video(teacher)

    data = videos.get(student, video["id"])
    assert data["userLiked"] is False
    with pytest.raises(Forbidden):
        videos.get(outsider, video["id"])
    with pytest.raises(NotFound):
        videos.get(student, str(ObjectId()))


def test_only_owner_or_admin_updates_video(videos, make_principal, make_video) -> None:
    owner, other = make_principal("teacher"), make_principal("teacher")
    admin = make_principal("admin")
    video = make_video(owner)

    with pytest.raises(Forbidden):
        videos.update(other, video["id"], {"title": "Hijacked"})
    assert videos.update(owner, video["id"], {"title": "Renamed"})["title"] == "Renamed"
    assert videos.update(admin, video["id"], {"topic": "Nebulae"})["topic"] == "Nebulae"


def test_special_access_grant_notifies_new_students(videos, make_principal, make_video, database) -> None:
    teacher = make_principal("teacher")
    outsider = make_principal(branch="ECE")
    video = make_video(teacher)

    with pytest.raises(Forbidden):
        videos.get(outsider, video["id"])
    videos.update_special_access(teacher, video["id"], [outsider.id])
    videos.update_special_access(teacher, video["id"], [outsider.id])

    assert videos.get(outsider, video["id"])["id"] == video["id"]
    assert database["notification"].count_documents(
        {"recipient_id": outsider.id, "type": "video_access_granted"}
    ) == 1


def test_delete_video_cascades(videos, ledger, playlists, make_principal, make_video, database, storage, tmp_path) -> None:
    teacher = make_principal("teacher")
    student = make_principal()
    source = tmp_path / "clip.mp4"
    source.write_bytes(b"\x00\x01")
    stored = storage.upload(source, folder="videos", filename="clip.mp4", content_type="video/mp4")
    video = make_video(teacher, video_url=stored.url, media_key=stored.key)

    ledger.toggle_like(student, video["id"])
    ledger.record_view(student, video["id"], watch_time=3)
    comment = ledger.add_comment(student, video["id"], "Nice")
    ledger.create_report(teacher, comment["id"], "spam")
    playlist = playlists.create(
        teacher, {"title": "Stars", "description": "All about stars", "category": "Lecture", "branch": "CSE", "year": "2nd"}
    )
    playlists.add_video(teacher, playlist["id"], video["id"])

    videos.delete(teacher, video["id"])

    for collection in ("like", "view", "comment"):
        assert database[collection].count_documents({"video_id": video["id"]}) == 0
    assert database["report"].count_documents({}) == 0
    assert playlists.get(teacher, playlist["id"])["videos"] == []
    assert not (storage.root / stored.key).exists()


def test_notice_listing_for_students_hides_expired_and_foreign(notices, make_principal, database) -> None:
    teacher = make_principal("teacher")
    student = make_principal(branch="CSE", year="2nd")
    base = {"title": "Lab", "content": "Lab moved", "category": "General", "year": "All"}

    current = notices.create(teacher, {**base, "branch": "CSE", "expiration": {"type": "duration", "duration": "never"}})
    foreign = notices.create(teacher, {**base, "branch": "ECE", "expiration": {"type": "duration", "duration": "never"}})
    expired = notices.create(
        teacher, {**base, "branch": "CSE", "expiration": {"type": "date", "date": utcnow() + timedelta(days=1)}}
    )
    database["notice"].update_one(
        {"_id": ObjectId(expired["id"])}, {"$set": {"expires_at": utcnow() - timedelta(days=1)}}
    )

    assert _ids(notices.list(student)) == {current["id"]}
    assert foreign["id"] in _ids(notices.list(teacher, mine=True))
    assert _ids(notices.list(teacher, status="expired")) == {expired["id"]}


def test_notice_expiration_requires_its_value(notices, make_principal) -> None:
    teacher = make_principal("teacher")
    with pytest.raises(ValidationError):
        notices.create(
            teacher,
            {
                "title": "Lab",
                "content": "Lab moved",
                "category": "General",
                "branch": "CSE",
                "year": "All",
                "expiration": {"type": "duration"},
            },
        )


def test_playlist_add_video_conflict_and_notification(playlists, make_principal, make_video, database) -> None:
    teacher = make_principal("teacher")
    student = make_principal()
    video = make_video(teacher)
    playlist = playlists.create(
        teacher, {"title": "Stars", "description": "All about stars", "category": "Lecture", "branch": "CSE", "year": "2nd"}
    )

    updated = playlists.add_video(teacher, playlist["id"], video["id"])
    assert updated["videos"] == [{"video_id": video["id"], "order": 1}]
    with pytest.raises(Conflict):
        playlists.add_video(teacher, playlist["id"], video["id"])
    assert database["notification"].count_documents({"recipient_id": student.id, "type": "playlist_updated"}) == 1

    playlists.remove_video(teacher, playlist["id"], video["id"])
    with pytest.raises(NotFound):
        playlists.remove_video(teacher, playlist["id"], video["id"])


def test_playlist_detail_hides_videos_student_cannot_see(playlists, make_principal, make_video) -> None:
    teacher = make_principal("teacher")
    student = make_principal(branch="CSE", year="2nd")
    shown = make_video(teacher)
    hidden = make_video(teacher, branch="ME", year="1st")
    playlist = playlists.create(
        teacher, {"title": "Mixed", "description": "Both", "category": "Tutorial", "branch": "All", "year": "All"}
    )
    playlists.add_video(teacher, playlist["id"], shown["id"])
    playlists.add_video(teacher, playlist["id"], hidden["id"])

    detail = playlists.get(student, playlist["id"])
    assert [entry["video"]["id"] for entry in detail["videos"]] == [shown["id"]]
    assert playlists.get(teacher, playlist["id"])["videoCount"] == 2


def test_notes_upsert_per_video(notes, make_principal, make_video) -> None:
    teacher = make_principal("teacher")
    student = make_principal()
    video = make_video(teacher)

    first = notes.save(student, content="Stars fuse hydrogen", video_id=video["id"], timestamp=12)
    second = notes.save(student, content="Then helium", video_id=video["id"])

    assert first["id"] == second["id"]
    assert second["content"] == "Then helium"
    assert second["timestamp"] == 12
    assert notes.list(student, video_id=video["id"]).total == 1


def test_notes_rules(notes, make_principal, make_video) -> None:
    teacher = make_principal("teacher")
    student, other = make_principal(), make_principal()
    outsider = make_principal(branch="ECE")
    video = make_video(teacher)

    with pytest.raises(ValidationError):
        notes.save(student, content="no title")
    with pytest.raises(Forbidden):
        notes.save(outsider, content="peek", video_id=video["id"])
    with pytest.raises(Forbidden):
        notes.save(teacher, content="teachers keep no notes", title="x")

    note = notes.save(student, content="Revise chapter 3", title="Reminder")
    with pytest.raises(Forbidden):
        notes.update(other, note["id"], {"content": "mine now"})
    assert notes.update(student, note["id"], {"content": "Revise chapter 4"})["content"] == "Revise chapter 4"
    notes.delete(student, note["id"])
    assert notes.list(student).total == 0
