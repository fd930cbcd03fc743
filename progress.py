"""
Per-course learner progress.

completion_percentage = round(100 * (completed lessons + passed quizzes)
/ (total lessons + total quizzes)), 0 when there is nothing to complete.
Every path that changes the counters recomputes it with the same rounding.
"""

import logging
from datetime import timedelta
from typing import Optional, Tuple

from pymongo import ReturnDocument

from auth import MANAGE_PROGRESS, Caller
from database import get_documents
from errors import InvalidInput, NotFound
from schemas import Progress, ProgressTotals
from utils import as_utc, page_info, parse_object_id, percent, sort_spec, utcnow

logger = logging.getLogger(__name__)

RECOMPUTE_RETRIES = 5
ACTIVE_WINDOW = timedelta(days=7)

SORT_FIELDS = {
    "updatedAt": "updated_at",
    "createdAt": "created_at",
    "lastAccessedAt": "last_accessed_at",
    "completionPercentage": "completion_percentage",
    "passedQuizzes": "passed_quizzes",
}


def completion_percentage(doc: dict) -> int:
    total = doc.get("total_lessons", 0) + doc.get("total_quizzes", 0)
    completed = len(doc.get("completed_lessons") or []) + doc.get("passed_quizzes", 0)
    return min(100, percent(completed, total))


def _save_completion(db, doc: dict, now) -> dict:
    """Store the percentage computed from doc, but only while the stored
    counters still equal the ones it was computed from.

    A concurrent counter change makes the write miss; the row is then re-read
    and the percentage recomputed from the fresh counters.
    """
    for _ in range(RECOMPUTE_RETRIES):
        pct = completion_percentage(doc)
        result = db["progress"].update_one(
            {
                "_id": doc["_id"],
                "total_lessons": doc.get("total_lessons", 0),
                "total_quizzes": doc.get("total_quizzes", 0),
                "passed_quizzes": doc.get("passed_quizzes", 0),
                "completed_lessons": {"$size": len(doc.get("completed_lessons") or [])},
            },
            {"$set": {"completion_percentage": pct, "updated_at": now}},
        )
        if result.matched_count:
            doc["completion_percentage"] = pct
            doc["updated_at"] = now
            return doc
        fresh = db["progress"].find_one({"_id": doc["_id"]})
        if fresh is None:
            raise NotFound("Progress not found")
        doc = fresh
    logger.warning("Completion of progress %s kept changing, stored value left as is", doc["_id"])
    return doc


def _require_course(db, course_id: str):
    course = db["course"].find_one({"_id": parse_object_id(course_id, "course ID")})
    if not course:
        raise NotFound("Course not found")
    return course


def _require_progress(db, learner_id: str, course_id: str) -> dict:
    doc = db["progress"].find_one({"user_id": learner_id, "course_id": course_id})
    if not doc:
        raise NotFound("Progress not found for this course")
    return doc


def on_quiz_passed(db, learner_id: str, course_id: str, quiz_id: str, now=None) -> Optional[dict]:
    """Count a passed quiz towards the learner's course progress.

    Every passing submission counts, including another pass of a quiz the
    learner had already passed; the percentage is clamped at 100. Returns the
    updated progress document, or None when the learner has no progress row
    for the course (the pass is dropped).
    """
    now = now or utcnow()
    doc = db["progress"].find_one_and_update(
        {"user_id": learner_id, "course_id": course_id},
        {"$inc": {"passed_quizzes": 1}, "$set": {"last_accessed_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        logger.warning(
            "No progress row for user %s in course %s, pass of quiz %s not recorded",
            learner_id, course_id, quiz_id,
        )
        return None

    doc = _save_completion(db, doc, now)
    logger.info("Progress for user %s in course %s now %s%%", learner_id, course_id, doc["completion_percentage"])
    return doc


def mark_lesson_completed(db, learner_id: str, course_id: str, lesson_id: str, now=None) -> Tuple[dict, bool]:
    """Add lesson_id to the completed lessons; the flag is False if it was already there."""
    _require_course(db, course_id)
    parse_object_id(lesson_id, "lesson ID")
    doc = _require_progress(db, learner_id, course_id)

    if any(cl.get("lesson_id") == lesson_id for cl in doc.get("completed_lessons") or []):
        return doc, False

    now = now or utcnow()
    updated = db["progress"].find_one_and_update(
        {"_id": doc["_id"], "completed_lessons.lesson_id": {"$ne": lesson_id}},
        {
            "$push": {"completed_lessons": {"lesson_id": lesson_id, "completed_at": now}},
            "$set": {"last_accessed_at": now},
        },
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        return _require_progress(db, learner_id, course_id), False
    return _save_completion(db, updated, now), True


def update_quiz_progress(db, learner_id: str, course_id: str, passed_quizzes: int, now=None) -> dict:
    """Overwrite the passed-quiz counter; it may not exceed the course's quiz total."""
    _require_course(db, course_id)
    doc = _require_progress(db, learner_id, course_id)
    if passed_quizzes > doc.get("total_quizzes", 0):
        raise InvalidInput("Passed quizzes cannot exceed total quizzes")

    now = now or utcnow()
    updated = db["progress"].find_one_and_update(
        {"_id": doc["_id"], "total_quizzes": {"$gte": passed_quizzes}},
        {"$set": {"passed_quizzes": passed_quizzes, "last_accessed_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        # total_quizzes was lowered in between
        raise InvalidInput("Passed quizzes cannot exceed total quizzes")
    return _save_completion(db, updated, now)


def get_course_progress(db, learner_id: str, course_id: str) -> dict:
    _require_course(db, course_id)
    return _require_progress(db, learner_id, course_id)


def list_my_progress(db, learner_id: str, page: int = 1, limit: int = 10,
                     sort_by: str = "updatedAt", sort_order: str = "desc") -> dict:
    sort = sort_spec(SORT_FIELDS, sort_by, sort_order)
    query = {"user_id": learner_id}
    page, limit = max(1, page), max(1, limit)
    rows = get_documents(db, "progress", query, sort=sort, skip=(page - 1) * limit, limit=limit)
    return {
        "progress": [progress_view(p) for p in rows],
        "pagination": page_info(page, limit, db["progress"].count_documents(query), "totalProgress"),
    }


def list_all_progress(db, caller: Caller, course_id: Optional[str] = None, user_id: Optional[str] = None,
                      page: int = 1, limit: int = 10,
                      sort_by: str = "updatedAt", sort_order: str = "desc") -> dict:
    caller.require(MANAGE_PROGRESS, "Only admin can view all progress")
    sort = sort_spec(SORT_FIELDS, sort_by, sort_order)

    query = {}
    if course_id:
        query["course_id"] = course_id
    if user_id:
        query["user_id"] = user_id

    page, limit = max(1, page), max(1, limit)
    rows = get_documents(db, "progress", query, sort=sort, skip=(page - 1) * limit, limit=limit)
    return {
        "progress": [progress_view(p) for p in rows],
        "pagination": page_info(page, limit, db["progress"].count_documents(query), "totalProgress"),
    }


def delete_progress(db, progress_id: str, caller: Caller) -> None:
    caller.require(MANAGE_PROGRESS, "Only admin can delete progress")
    deleted = db["progress"].find_one_and_delete({"_id": parse_object_id(progress_id, "progress ID")})
    if not deleted:
        raise NotFound("Progress not found")
    logger.info("Progress %s of user %s deleted by %s", progress_id, deleted["user_id"], caller.user_id)


def course_progress_stats(db, course_id: str, now=None) -> dict:
    """Aggregate progress of every learner enrolled in a course.

    Averages are rounded to two decimals; a learner is active when the row
    was touched within the last seven days.
    """
    _require_course(db, course_id)
    rows = list(db["progress"].find({"course_id": course_id}))
    total = len(rows)
    if not total:
        return {
            "totalStudents": 0,
            "averageCompletion": 0,
            "completedStudents": 0,
            "activeStudents": 0,
            "averageLessonsCompleted": 0,
            "averageQuizzesPassed": 0,
        }

    active_since = (now or utcnow()) - ACTIVE_WINDOW
    return {
        "totalStudents": total,
        "averageCompletion": round(sum(r.get("completion_percentage", 0) for r in rows) / total, 2),
        "completedStudents": sum(1 for r in rows if r.get("completion_percentage", 0) == 100),
        "activeStudents": sum(
            1 for r in rows
            if r.get("last_accessed_at") and as_utc(r["last_accessed_at"]) >= active_since
        ),
        "averageLessonsCompleted": round(sum(len(r.get("completed_lessons") or []) for r in rows) / total, 2),
        "averageQuizzesPassed": round(sum(r.get("passed_quizzes", 0) for r in rows) / total, 2),
    }


def upsert_progress(db, learner_id: str, course_id: str, totals: ProgressTotals, now=None) -> dict:
    """Create the learner's progress row for a course, or update its totals."""
    _require_course(db, course_id)

    now = now or utcnow()
    doc = db["progress"].find_one({"user_id": learner_id, "course_id": course_id})
    if doc is None:
        row = Progress(
            user_id=learner_id,
            course_id=course_id,
            total_lessons=totals.total_lessons or 0,
            total_quizzes=totals.total_quizzes or 0,
            last_accessed_at=now,
        ).model_dump()
        row["completion_percentage"] = completion_percentage(row)
        row["created_at"] = now
        row["updated_at"] = now
        db["progress"].insert_one(row)
        logger.info("Progress row created for user %s in course %s", learner_id, course_id)
        return row

    changes = {"last_accessed_at": now}
    if totals.total_lessons is not None:
        changes["total_lessons"] = totals.total_lessons
    if totals.total_quizzes is not None:
        changes["total_quizzes"] = totals.total_quizzes
    doc = db["progress"].find_one_and_update(
        {"_id": doc["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    return _save_completion(db, doc, now)


def reset_progress(db, learner_id: str, course_id: str, now=None) -> dict:
    _require_course(db, course_id)
    doc = _require_progress(db, learner_id, course_id)
    now = now or utcnow()
    return db["progress"].find_one_and_update(
        {"_id": doc["_id"]},
        {"$set": {
            "completed_lessons": [],
            "passed_quizzes": 0,
            "completion_percentage": 0,
            "last_accessed_at": now,
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )


def progress_view(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "user": doc["user_id"],
        "course": doc["course_id"],
        "completedLessons": [
            {"lesson": cl["lesson_id"], "completedAt": cl.get("completed_at")}
            for cl in doc.get("completed_lessons") or []
        ],
        "totalLessons": doc.get("total_lessons", 0),
        "totalQuizzes": doc.get("total_quizzes", 0),
        "passedQuizzes": doc.get("passed_quizzes", 0),
        "completionPercentage": doc.get("completion_percentage", 0),
        "lastAccessedAt": doc.get("last_accessed_at"),
    }
