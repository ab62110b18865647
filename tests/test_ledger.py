import threading
from concurrent.futures import ThreadPoolExecutor

import mongomock
import pytest
from bson import ObjectId

from errors import AlreadyExists, Conflict, DuplicateReport, Forbidden, NotFound, SelfReport, ValidationError

# each of these is a single operation on a real server
ATOMIC_OPERATIONS = ("find_one", "find_one_and_delete", "insert_one", "update_one")


def _video_doc(database, video: dict) -> dict:
    return database["video"].find_one({"_id": ObjectId(video["id"])})


def _serialized(method, lock):
    def locked(self, *args, **kwargs):
        with lock:
            return method(self, *args, **kwargs)

    return locked


@pytest.fixture()
def atomic_collections(monkeypatch):
    """Make mongomock apply each collection call atomically across threads."""
    lock = threading.RLock()
    for name in ATOMIC_OPERATIONS:
        method = getattr(mongomock.collection.Collection, name)
        monkeypatch.setattr(mongomock.collection.Collection, name, _serialized(method, lock))


def test_toggle_like_alternates_and_counts(ledger, make_principal, make_video, database) -> None:
    teacher = make_principal("teacher")
    student = make_principal()
    video = make_video(teacher)

    assert ledger.toggle_like(student, video["id"]) == {"liked": True}
    assert ledger.toggle_like(student, video["id"]) == {"liked": False}
    assert ledger.toggle_like(student, video["id"]) == {"liked": True}

    assert database["like"].count_documents({"video_id": video["id"]}) == 1
    assert _video_doc(database, video)["likes_count"] == 1


def test_like_notifies_owner_but_not_self(ledger, make_principal, make_video, database) -> None:
    teacher = make_principal("teacher")
    student = make_principal()
    video = make_video(teacher)

    ledger.toggle_like(student, video["id"])
    ledger.toggle_like(teacher, video["id"])

    rows = list(database["notification"].find({"type": "video_like"}))
    assert [row["recipient_id"] for row in rows] == [teacher.id]
    assert rows[0]["data"]["liked_by"] == student.id


def test_racing_duplicate_like_is_a_conflict(ledger, make_principal, make_video, database, monkeypatch) -> None:
    teacher = make_principal("teacher")
    student = make_principal()
    video = make_video(teacher)
    database["like"].insert_one({"video_id": video["id"], "user_id": student.id})

    # the row is invisible to the delete branch, as if another request inserted it in between
    monkeypatch.setattr(mongomock.collection.Collection, "find_one_and_delete", lambda self, *args, **kwargs: None)
    with pytest.raises(AlreadyExists):
        ledger.toggle_like(student, video["id"])
    monkeypatch.undo()
    assert database["like"].count_documents({"video_id": video["id"], "user_id": student.id}) == 1


def test_concurrent_like_toggles_settle_on_one_row(
    ledger, make_principal, make_video, database, atomic_collections
) -> None:
    teacher = make_principal("teacher")
    student = make_principal()
    video = make_video(teacher)

    with ThreadPoolExecutor(max_workers=8) as pool:
        futures = [pool.submit(ledger.toggle_like, student, video["id"]) for _ in range(24)]
    failures = [future.exception() for future in futures if future.exception() is not None]

    assert all(isinstance(failure, AlreadyExists) for failure in failures)
    rows = database["like"].count_documents({"video_id": video["id"], "user_id": student.id})
    assert rows in (0, 1)
    assert _video_doc(database, video)["likes_count"] == rows


def test_students_cannot_like_invisible_videos(ledger, make_principal, make_video) -> None:
    teacher = make_principal("teacher")
    outsider = make_principal(branch="ECE")
    video = make_video(teacher)
    with pytest.raises(Forbidden):
        ledger.toggle_like(outsider, video["id"])


def test_view_counter_counts_distinct_viewers(ledger, make_principal, make_video, database) -> None:
    teacher = make_principal("teacher")
    video = make_video(teacher)
    students = [make_principal() for _ in range(3)]

    for student in students:
        ledger.record_view(student, video["id"], watch_time=30)
    ledger.record_view(students[0], video["id"], watch_time=60)

    assert _video_doc(database, video)["views"] == 3
    assert database["view"].count_documents({"video_id": video["id"]}) == 3


def test_zero_metrics_do_not_erase_recorded_values(ledger, make_principal, make_video) -> None:
    teacher = make_principal("teacher")
    student = make_principal()
    video = make_video(teacher)

    ledger.record_view(student, video["id"], watch_time=120, completion_percentage=40, last_position=118)
    view = ledger.record_view(student, video["id"], watch_time=0, completion_percentage=None, last_position=0)

    assert view["watch_time"] == 120
    assert view["completion_percentage"] == 40
    assert view["last_position"] == 118


def test_invalid_view_metrics_rejected(ledger, make_principal, make_video) -> None:
    teacher = make_principal("teacher")
    student = make_principal()
    video = make_video(teacher)
    with pytest.raises(ValidationError):
        ledger.record_view(student, video["id"], completion_percentage=150)


def test_view_stats_for_owner_only(ledger, make_principal, make_video) -> None:
    teacher = make_principal("teacher")
    other_teacher = make_principal("teacher")
    video = make_video(teacher)
    first, second = make_principal(), make_principal()
    ledger.record_view(first, video["id"], watch_time=10, completion_percentage=20)
    ledger.record_view(second, video["id"], watch_time=30, completion_percentage=90)

    stats = ledger.view_stats(teacher, video["id"])
    assert stats["totalViews"] == 2
    assert stats["averageWatchTime"] == 20
    assert stats["completionDistribution"] == {"0-25": 1, "26-50": 0, "51-75": 0, "76-100": 1}
    with pytest.raises(Forbidden):
        ledger.view_stats(other_teacher, video["id"])


def test_replies_attach_to_top_level_ancestor(ledger, make_principal, make_video) -> None:
    teacher = make_principal("teacher")
    student = make_principal()
    video = make_video(teacher)

    root = ledger.add_comment(student, video["id"], "Great lecture")
    reply = ledger.add_comment(teacher, video["id"], "Thanks", parent_id=root["id"])
    nested = ledger.add_comment(student, video["id"], "Welcome", parent_id=reply["id"])

    assert reply["parent_id"] == root["id"]
    assert nested["parent_id"] == root["id"]


def test_reply_must_target_same_video(ledger, make_principal, make_video) -> None:
    teacher = make_principal("teacher")
    student = make_principal()
    first = make_video(teacher)
    second = make_video(teacher, title="Black Holes")
    root = ledger.add_comment(student, first["id"], "Question")
    with pytest.raises(ValidationError):
        ledger.add_comment(student, second["id"], "Answer", parent_id=root["id"])


def test_deleting_top_level_comment_cascades(ledger, make_principal, make_video, database) -> None:
    teacher = make_principal("teacher")
    student = make_principal()
    video = make_video(teacher)

    root = ledger.add_comment(student, video["id"], "Root")
    replies = [ledger.add_comment(teacher, video["id"], f"Reply {n}", parent_id=root["id"]) for n in range(3)]
    ledger.create_report(teacher, root["id"], "spam")
    ledger.create_report(student, replies[0]["id"], "off-topic")

    assert ledger.delete_comment(student, root["id"]) == 4
    tree = [root["id"]] + [reply["id"] for reply in replies]
    assert database["comment"].count_documents({"$or": [{"parent_id": root["id"]}, {"_id": ObjectId(root["id"])}]}) == 0
    assert database["report"].count_documents({"comment_id": {"$in": tree}}) == 0


def test_only_author_or_admin_deletes_comment(ledger, make_principal, make_video) -> None:
    teacher = make_principal("teacher")
    author, other = make_principal(), make_principal()
    admin = make_principal("admin")
    video = make_video(teacher)
    comment = ledger.add_comment(author, video["id"], "Hello")

    with pytest.raises(Forbidden):
        ledger.delete_comment(other, comment["id"])
    assert ledger.delete_comment(admin, comment["id"]) == 1


def test_comment_like_toggles_set_membership(ledger, make_principal, make_video, database) -> None:
    teacher = make_principal("teacher")
    author, fan = make_principal(), make_principal()
    video = make_video(teacher)
    comment = ledger.add_comment(author, video["id"], "Nice")

    liked = ledger.toggle_comment_like(fan, comment["id"])
    assert (liked.liked, liked.likes_count) == (True, 1)
    unliked = ledger.toggle_comment_like(fan, comment["id"])
    assert (unliked.liked, unliked.likes_count) == (False, 0)
    assert database["notification"].count_documents({"type": "comment_like", "recipient_id": author.id}) == 1


def test_new_comment_notifies_video_owner(ledger, make_principal, make_video, database) -> None:
    teacher = make_principal("teacher")
    student = make_principal()
    video = make_video(teacher)
    ledger.add_comment(student, video["id"], "Question")
    ledger.add_comment(teacher, video["id"], "Answer")
    assert database["notification"].count_documents({"type": "video_comment"}) == 1


def test_self_report_rejected(ledger, make_principal, make_video) -> None:
    teacher = make_principal("teacher")
    student = make_principal()
    video = make_video(teacher)
    comment = ledger.add_comment(student, video["id"], "Mine")
    with pytest.raises(SelfReport):
        ledger.create_report(student, comment["id"], "spam")


@pytest.mark.parametrize("reason, details", [("other", None), ("other", "   "), ("nonsense", None)])
def test_self_report_wins_over_reason_checks(ledger, make_principal, make_video, reason, details) -> None:
    teacher = make_principal("teacher")
    student = make_principal()
    video = make_video(teacher)
    comment = ledger.add_comment(student, video["id"], "Mine")
    with pytest.raises(SelfReport):
        ledger.create_report(student, comment["id"], reason, details)


def test_outsiders_cannot_touch_comments_on_hidden_videos(ledger, make_principal, make_video, database) -> None:
    teacher = make_principal("teacher")
    author = make_principal()
    outsider = make_principal(branch="ECE")
    video = make_video(teacher)
    comment = ledger.add_comment(author, video["id"], "secret lecture remark")

    with pytest.raises(Forbidden):
        ledger.toggle_comment_like(outsider, comment["id"])
    with pytest.raises(Forbidden):
        ledger.create_report(outsider, comment["id"], "spam")
    with pytest.raises(Forbidden):
        ledger.report_count(outsider, comment["id"])
    with pytest.raises(Forbidden):
        ledger.has_reported(outsider, comment["id"])
    with pytest.raises(Forbidden):
        ledger.own_report(outsider, comment["id"])

    assert database["comment"].find_one({"_id": ObjectId(comment["id"])})["likes"] == []
    assert database["notification"].count_documents({"type": "comment_like"}) == 0
    assert database["report"].count_documents({}) == 0


def test_allow_listed_outsider_can_like_comments(ledger, videos, make_principal, make_video) -> None:
    teacher = make_principal("teacher")
    author = make_principal()
    outsider = make_principal(branch="ECE")
    video = make_video(teacher)
    comment = ledger.add_comment(author, video["id"], "Welcome")

    videos.update_special_access(teacher, video["id"], [outsider.id])
    state = ledger.toggle_comment_like(outsider, comment["id"])
    assert state.liked is True


def test_duplicate_report_rejected(ledger, make_principal, make_video) -> None:
    teacher = make_principal("teacher")
    author, reporter = make_principal(), make_principal()
    video = make_video(teacher)
    comment = ledger.add_comment(author, video["id"], "Buy now")

    ledger.create_report(reporter, comment["id"], "spam")
    with pytest.raises(DuplicateReport):
        ledger.create_report(reporter, comment["id"], "harassment")
    assert ledger.report_count(reporter, comment["id"]) == 1
    assert ledger.has_reported(reporter, comment["id"])


def test_other_reason_requires_details(ledger, make_principal, make_video) -> None:
    teacher = make_principal("teacher")
    author, reporter = make_principal(), make_principal()
    video = make_video(teacher)
    comment = ledger.add_comment(author, video["id"], "Hmm")

    with pytest.raises(ValidationError):
        ledger.create_report(reporter, comment["id"], "other")
    report = ledger.create_report(reporter, comment["id"], "other", "Misleading claims")
    assert report["details"] == "Misleading claims"


def test_report_state_machine(ledger, make_principal, make_video, database) -> None:
    teacher = make_principal("teacher")
    author, reporter = make_principal(), make_principal()
    admin = make_principal("admin")
    video = make_video(teacher)
    comment = ledger.add_comment(author, video["id"], "Rude")
    report = ledger.create_report(reporter, comment["id"], "harassment")

    with pytest.raises(Forbidden):
        ledger.update_report_status(teacher, report["id"], "reviewed")

    reviewed = ledger.update_report_status(admin, report["id"], "reviewed")
    assert reviewed["status"] == "reviewed"
    with pytest.raises(Conflict):
        ledger.update_report_status(admin, report["id"], "ignored")

    ledger.cancel_report(reporter, comment["id"])
    assert database["report"].count_documents({}) == 0


def test_reporter_cancels_pending_report(ledger, make_principal, make_video, database) -> None:
    teacher = make_principal("teacher")
    author, reporter = make_principal(), make_principal()
    video = make_video(teacher)
    comment = ledger.add_comment(author, video["id"], "Off topic rant")
    ledger.create_report(reporter, comment["id"], "off-topic")

    ledger.cancel_report(reporter, comment["id"])
    assert database["report"].count_documents({}) == 0
    assert not ledger.has_reported(reporter, comment["id"])
    # a cancelled report can be filed again
    assert ledger.create_report(reporter, comment["id"], "spam")["status"] == "pending"


def test_only_the_reporter_can_cancel(ledger, make_principal, make_video, database) -> None:
    teacher = make_principal("teacher")
    author, reporter, bystander = make_principal(), make_principal(), make_principal()
    admin = make_principal("admin")
    video = make_video(teacher)
    comment = ledger.add_comment(author, video["id"], "Rude")
    ledger.create_report(reporter, comment["id"], "harassment")

    for other in (bystander, author, admin):
        with pytest.raises(NotFound):
            ledger.cancel_report(other, comment["id"])
    assert database["report"].count_documents({"comment_id": comment["id"], "user_id": reporter.id}) == 1
