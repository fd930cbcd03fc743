import logging
from datetime import timedelta

import pytest
from bson import ObjectId

import progress
from auth import caller_for
from errors import Forbidden, InvalidInput, NotFound
from schemas import ProgressTotals
from tests.factories import T0, add_course, add_progress

ADMIN = caller_for("admin-1", "admin")
LEARNER = caller_for("learner-1")


def row(db, user="learner-1"):
    return db["progress"].find_one({"user_id": user})


@pytest.mark.parametrize("lessons, quizzes, completed, passed, expected", [
    (4, 1, 2, 0, 40),
    (4, 1, 2, 1, 60),
    (0, 0, 0, 0, 0),
    (3, 0, 1, 0, 33),
    (3, 0, 2, 0, 67),
    (8, 0, 1, 0, 13),
    (1, 0, 3, 0, 100),
])
def test_completion_percentage(lessons, quizzes, completed, passed, expected):
    doc = {
        "total_lessons": lessons,
        "total_quizzes": quizzes,
        "completed_lessons": [{"lesson_id": str(i)} for i in range(completed)],
        "passed_quizzes": passed,
    }
    assert progress.completion_percentage(doc) == expected


class TestQuizPassed:
    def test_pass_increments_and_recomputes(self, db, course_id):
        add_progress(db, "learner-1", course_id, total_lessons=4, total_quizzes=1, completed_lessons=["a", "b"])
        doc = progress.on_quiz_passed(db, "learner-1", course_id, "quiz-1", now=T0)
        assert doc["passed_quizzes"] == 1
        assert doc["completion_percentage"] == 60
        assert row(db)["completion_percentage"] == 60

    def test_every_pass_is_counted(self, db, course_id):
        add_progress(db, "learner-1", course_id, total_lessons=1, total_quizzes=2)
        progress.on_quiz_passed(db, "learner-1", course_id, "quiz-1", now=T0)
        doc = progress.on_quiz_passed(db, "learner-1", course_id, "quiz-1", now=T0)
        assert doc["passed_quizzes"] == 2
        assert row(db)["completion_percentage"] == 67

    def test_percentage_is_clamped_when_passes_exceed_quizzes(self, db, course_id):
        add_progress(db, "learner-1", course_id, total_lessons=1, total_quizzes=1, completed_lessons=["a"])
        progress.on_quiz_passed(db, "learner-1", course_id, "quiz-1", now=T0)
        doc = progress.on_quiz_passed(db, "learner-1", course_id, "quiz-1", now=T0)
        assert doc["passed_quizzes"] == 2
        assert doc["completion_percentage"] == 100

    def test_lesson_completed_between_pass_and_recompute(self, db, course_id):
        add_progress(db, "learner-1", course_id, total_lessons=4, total_quizzes=1)

        class InterleavedProgress:
            """Completes a lesson right after the pass increment, before the percentage is stored."""
            def __init__(self, collection):
                self.collection = collection

            def find_one_and_update(self, *args, **kwargs):
                doc = self.collection.find_one_and_update(*args, **kwargs)
                self.collection.update_one(
                    {"_id": doc["_id"]},
                    {"$push": {"completed_lessons": {"lesson_id": "lesson-1", "completed_at": T0}}},
                )
                return doc

            def __getattr__(self, name):
                return getattr(self.collection, name)

        class InterleavedDb:
            def __getitem__(self, name):
                if name == "progress":
                    return InterleavedProgress(db["progress"])
                return db[name]

        doc = progress.on_quiz_passed(InterleavedDb(), "learner-1", course_id, "quiz-1", now=T0)
        assert doc["completion_percentage"] == 40
        assert row(db)["completion_percentage"] == 40

    def test_stale_snapshot_is_recomputed_from_stored_counters(self, db, course_id):
        add_progress(db, "learner-1", course_id, total_lessons=4, total_quizzes=1)
        stale = row(db)
        progress.mark_lesson_completed(db, "learner-1", course_id, str(ObjectId()), now=T0)

        doc = progress._save_completion(db, stale, T0)
        assert doc["completion_percentage"] == 20
        assert row(db)["completion_percentage"] == 20

    def test_missing_row_is_dropped_and_logged(self, db, course_id, caplog):
        with caplog.at_level(logging.WARNING, logger="progress"):
            assert progress.on_quiz_passed(db, "learner-1", course_id, "quiz-1", now=T0) is None
        assert db["progress"].count_documents({}) == 0
        assert "not recorded" in caplog.text


class TestLessons:
    def test_mark_lesson_completed(self, db, course_id):
        add_progress(db, "learner-1", course_id, total_lessons=4, total_quizzes=1)
        lesson = str(ObjectId())
        doc, newly = progress.mark_lesson_completed(db, "learner-1", course_id, lesson, now=T0)
        assert newly is True
        assert [cl["lesson_id"] for cl in doc["completed_lessons"]] == [lesson]
        assert doc["completion_percentage"] == 20

    def test_mark_lesson_twice_is_idempotent(self, db, course_id):
        add_progress(db, "learner-1", course_id, total_lessons=4)
        lesson = str(ObjectId())
        progress.mark_lesson_completed(db, "learner-1", course_id, lesson, now=T0)
        doc, newly = progress.mark_lesson_completed(db, "learner-1", course_id, lesson, now=T0)
        assert newly is False
        assert len(doc["completed_lessons"]) == 1
        assert row(db)["completion_percentage"] == 25

    def test_lesson_without_progress_row(self, db, course_id):
        with pytest.raises(NotFound, match="Progress not found"):
            progress.mark_lesson_completed(db, "learner-1", course_id, str(ObjectId()))

    def test_malformed_lesson_id(self, db, course_id):
        add_progress(db, "learner-1", course_id, total_lessons=4)
        with pytest.raises(InvalidInput, match="lesson ID"):
            progress.mark_lesson_completed(db, "learner-1", course_id, "lesson-1")

    def test_unknown_course(self, db):
        with pytest.raises(NotFound, match="Course not found"):
            progress.get_course_progress(db, "learner-1", str(ObjectId()))


class TestTotals:
    def test_create_then_update(self, db, course_id):
        created = progress.upsert_progress(
            db, "learner-1", course_id, ProgressTotals(totalLessons=4, totalQuizzes=1), now=T0,
        )
        assert created["completion_percentage"] == 0
        assert created["total_lessons"] == 4

        progress.mark_lesson_completed(db, "learner-1", course_id, str(ObjectId()), now=T0)
        updated = progress.upsert_progress(db, "learner-1", course_id, ProgressTotals(totalLessons=1), now=T0)
        assert updated["total_lessons"] == 1
        assert updated["total_quizzes"] == 1
        assert updated["completion_percentage"] == 50
        assert db["progress"].count_documents({}) == 1

    def test_reset(self, db, course_id):
        add_progress(db, "learner-1", course_id, total_lessons=2, total_quizzes=1, completed_lessons=["a"])
        progress.on_quiz_passed(db, "learner-1", course_id, "quiz-1", now=T0)

        doc = progress.reset_progress(db, "learner-1", course_id, now=T0)
        assert doc["completed_lessons"] == []
        assert doc["passed_quizzes"] == 0
        assert doc["completion_percentage"] == 0
        # counting starts over after a reset
        assert progress.on_quiz_passed(db, "learner-1", course_id, "quiz-1", now=T0)["passed_quizzes"] == 1


class TestQuizProgress:
    def test_set_passed_quizzes(self, db, course_id):
        add_progress(db, "learner-1", course_id, total_lessons=2, total_quizzes=2, completed_lessons=["a"])
        doc = progress.update_quiz_progress(db, "learner-1", course_id, 2, now=T0)
        assert doc["passed_quizzes"] == 2
        assert doc["completion_percentage"] == 75
        assert row(db)["completion_percentage"] == 75

    def test_cannot_exceed_total_quizzes(self, db, course_id):
        add_progress(db, "learner-1", course_id, total_quizzes=1)
        with pytest.raises(InvalidInput, match="cannot exceed total quizzes"):
            progress.update_quiz_progress(db, "learner-1", course_id, 2, now=T0)
        assert row(db)["passed_quizzes"] == 0

    def test_without_progress_row(self, db, course_id):
        with pytest.raises(NotFound, match="Progress not found"):
            progress.update_quiz_progress(db, "learner-1", course_id, 0)


class TestListing:
    def test_my_progress_is_paginated(self, db):
        courses = [add_course(db) for _ in range(3)]
        for days, course in enumerate(courses):
            add_progress(db, "learner-1", course, last_accessed_at=T0 + timedelta(days=days))
        add_progress(db, "learner-2", add_course(db))

        first = progress.list_my_progress(db, "learner-1", page=1, limit=2)
        assert [p["course"] for p in first["progress"]] == [courses[2], courses[1]]
        assert first["pagination"] == {
            "currentPage": 1,
            "totalPages": 2,
            "totalProgress": 3,
            "hasNext": True,
            "hasPrev": False,
        }

    def test_my_progress_sorted_by_completion(self, db):
        for pct in (50, 10, 90):
            add_progress(db, "learner-1", add_course(db), completion_percentage=pct)
        listing = progress.list_my_progress(db, "learner-1", sort_by="completionPercentage", sort_order="asc")
        assert [p["completionPercentage"] for p in listing["progress"]] == [10, 50, 90]

    def test_unknown_sort_field(self, db):
        with pytest.raises(InvalidInput, match="Invalid sort field"):
            progress.list_my_progress(db, "learner-1", sort_by="user_id")


class TestCourseStats:
    def test_stats(self, db, course_id):
        now = T0 + timedelta(days=10)
        add_progress(db, "learner-1", course_id, total_lessons=2, completed_lessons=["a", "b"],
                     completion_percentage=100, last_accessed_at=now - timedelta(days=1))
        add_progress(db, "learner-2", course_id, total_lessons=2, total_quizzes=1, passed_quizzes=1,
                     completion_percentage=33, last_accessed_at=now - timedelta(days=8))
        add_progress(db, "learner-3", add_course(db), completion_percentage=100)

        assert progress.course_progress_stats(db, course_id, now=now) == {
            "totalStudents": 2,
            "averageCompletion": 66.5,
            "completedStudents": 1,
            "activeStudents": 1,
            "averageLessonsCompleted": 1,
            "averageQuizzesPassed": 0.5,
        }

    def test_stats_without_learners(self, db, course_id):
        stats = progress.course_progress_stats(db, course_id)
        assert stats["totalStudents"] == 0
        assert stats["averageCompletion"] == 0

    def test_stats_unknown_course(self, db):
        with pytest.raises(NotFound, match="Course not found"):
            progress.course_progress_stats(db, str(ObjectId()))


class TestAdministration:
    def test_list_all_filters_and_pages(self, db, course_id):
        other_course = add_course(db)
        add_progress(db, "learner-1", course_id)
        add_progress(db, "learner-2", course_id)
        add_progress(db, "learner-1", other_course)

        by_course = progress.list_all_progress(db, ADMIN, course_id=course_id)
        assert {p["user"] for p in by_course["progress"]} == {"learner-1", "learner-2"}
        by_user = progress.list_all_progress(db, ADMIN, user_id="learner-1", page=2, limit=1)
        assert len(by_user["progress"]) == 1
        assert by_user["pagination"]["totalProgress"] == 2
        assert by_user["pagination"]["hasPrev"] is True

    def test_list_all_requires_capability(self, db):
        with pytest.raises(Forbidden, match="Only admin can view all progress"):
            progress.list_all_progress(db, LEARNER)

    def test_delete(self, db, course_id):
        progress_id = add_progress(db, "learner-1", course_id)
        with pytest.raises(Forbidden):
            progress.delete_progress(db, progress_id, LEARNER)
        progress.delete_progress(db, progress_id, ADMIN)
        assert db["progress"].count_documents({}) == 0
        with pytest.raises(NotFound):
            progress.delete_progress(db, progress_id, ADMIN)

    def test_delete_malformed_id(self, db):
        with pytest.raises(InvalidInput, match="Invalid progress ID"):
            progress.delete_progress(db, "nope", ADMIN)
