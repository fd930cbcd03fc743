"""
Attempt ledger: starting, reading, listing and deleting quiz attempts.

Scoring and finalization live in scoring.py.
"""

import logging
from collections import defaultdict
from typing import List, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from auth import MANAGE_ATTEMPTS, Caller
from database import create_document
from errors import AttemptLimitExceeded, Conflict, NotFound
from schemas import SUBMITTED, Attempt
from utils import page_info, parse_object_id, percent, round_half_up, sort_spec, utcnow

logger = logging.getLogger(__name__)

HARDEST_QUESTIONS = 5

ADMIN_SORT_FIELDS = {
    "createdAt": "created_at",
    "startedAt": "started_at",
    "submittedAt": "submitted_at",
    "score": "score",
    "percentage": "percentage",
    "attemptNumber": "attempt_number",
    "timeTaken": "time_taken",
}


def _find_quiz(db, quiz_id: str) -> dict:
    quiz = db["quiz"].find_one({"_id": parse_object_id(quiz_id, "quiz ID")})
    if not quiz:
        raise NotFound("Quiz not found")
    return quiz


def _find_course(db, course_id) -> dict:
    course = None
    if isinstance(course_id, str) and ObjectId.is_valid(course_id):
        course = db["course"].find_one({"_id": ObjectId(course_id)})
    if not course:
        raise NotFound("Course not found")
    return course


def start_attempt(db, learner_id: str, quiz_id: str, now=None) -> dict:
    """Open a new attempt for learner_id, enforcing the quiz's attempt cap."""
    quiz = _find_quiz(db, quiz_id)
    quiz_id = str(quiz["_id"])
    _find_course(db, quiz.get("course_id"))

    prior = db["attempt"].count_documents({"user_id": learner_id, "quiz_id": quiz_id})
    max_attempts = quiz.get("max_attempts", 3)
    if max_attempts > 0 and prior >= max_attempts:
        raise AttemptLimitExceeded("Maximum attempts reached for this quiz")

    # numbers keep growing after an admin delete so they never collide with a kept attempt
    latest = db["attempt"].find_one(
        {"user_id": learner_id, "quiz_id": quiz_id}, sort=[("attempt_number", -1)]
    )
    next_number = latest["attempt_number"] + 1 if latest else 1

    attempt = Attempt(
        user_id=learner_id,
        quiz_id=quiz_id,
        course_id=quiz["course_id"],
        attempt_number=next_number,
        started_at=now or utcnow(),
    )
    try:
        attempt_id = create_document(db, "attempt", attempt)
    except DuplicateKeyError:
        raise Conflict("Another attempt for this quiz was started at the same time, please retry")

    logger.info("User %s started attempt %s (#%s) on quiz %s", learner_id, attempt_id, attempt.attempt_number, quiz_id)
    return {
        "attemptId": attempt_id,
        "quizDetails": {
            "title": quiz.get("title"),
            "description": quiz.get("description"),
            "timeLimit": quiz.get("time_limit", 30),
            "attemptNumber": attempt.attempt_number,
            "maxAttempts": max_attempts,
            "startedAt": attempt.started_at,
        },
    }


def get_attempt(db, attempt_id: str, learner_id: str) -> dict:
    attempt = db["attempt"].find_one({"_id": parse_object_id(attempt_id, "attempt ID"), "user_id": learner_id})
    if not attempt:
        raise NotFound("Quiz attempt not found")
    return attempt


def answer_view(record: dict) -> dict:
    return {
        "question": record["question_id"],
        "selectedOption": record["selected_option"],
        "isCorrect": record["is_correct"],
        "points": record.get("points", 0),
    }


def attempt_view(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "user": doc["user_id"],
        "quiz": doc["quiz_id"],
        "course": doc["course_id"],
        "attemptNumber": doc["attempt_number"],
        "status": doc.get("status"),
        "startedAt": doc.get("started_at"),
        "submittedAt": doc.get("submitted_at"),
        "answers": [answer_view(a) for a in doc.get("answers") or []],
        "score": doc.get("score", 0),
        "maxScore": doc.get("max_score", 0),
        "percentage": doc.get("percentage", 0),
        "passed": doc.get("passed", False),
        "timeTaken": doc.get("time_taken", 0),
    }


def submission_view(doc: dict) -> dict:
    """Response body for a successful submission."""
    return {
        "attemptId": str(doc["_id"]),
        "score": doc["score"],
        "maxScore": doc["max_score"],
        "percentage": doc["percentage"],
        "passed": doc["passed"],
        "timeTaken": doc["time_taken"],
        "answers": [answer_view(a) for a in doc["answers"]],
        "submittedAt": doc["submitted_at"],
    }


def attempt_details(db, attempt_id: str, learner_id: str) -> dict:
    """Detailed view of one of the learner's attempts.

    Results and per-answer feedback are only included once the attempt is
    submitted; explanations are only shown for wrong answers.
    """
    attempt = get_attempt(db, attempt_id, learner_id)
    quiz = _find_quiz(db, attempt["quiz_id"])

    result = {
        "attemptId": str(attempt["_id"]),
        "quiz": {
            "id": attempt["quiz_id"],
            "title": quiz.get("title"),
            "description": quiz.get("description"),
            "passingScore": quiz.get("passing_score", 70),
        },
        "attemptNumber": attempt["attempt_number"],
        "status": attempt.get("status"),
        "startedAt": attempt.get("started_at"),
        "submittedAt": attempt.get("submitted_at"),
        "timeTaken": attempt.get("time_taken", 0),
    }
    if attempt.get("status") != SUBMITTED:
        return result

    answered = [parse_object_id(a["question_id"], "question ID") for a in attempt.get("answers") or []]
    questions = {
        str(q["_id"]): q
        for q in db["question"].find({"quiz_id": attempt["quiz_id"], "_id": {"$in": answered}})
    }

    detailed = []
    for record in attempt.get("answers") or []:
        question = questions.get(record["question_id"], {})
        detailed.append({
            "question": record["question_id"],
            "questionText": question.get("question_text", "Question not found"),
            "selectedOption": record["selected_option"],
            "correctOption": question.get("correct_answer"),
            "isCorrect": record["is_correct"],
            "points": record.get("points", 0),
            "explanation": None if record["is_correct"] else question.get("explanation"),
        })

    result.update({
        "score": attempt.get("score", 0),
        "maxScore": attempt.get("max_score", 0),
        "percentage": attempt.get("percentage", 0),
        "passed": attempt.get("passed", False),
        "answers": detailed,
    })
    return result


def best_attempt(attempts: List[dict]) -> Optional[dict]:
    """Highest scoring submitted attempt; the most recent submission wins a tie."""
    submitted = [a for a in attempts if a.get("status") == SUBMITTED]
    if not submitted:
        return None
    return max(submitted, key=lambda a: (a.get("score", 0), a.get("submitted_at")))


def list_attempts(db, learner_id: str, quiz_id: str) -> dict:
    quiz = _find_quiz(db, quiz_id)
    quiz_id = str(quiz["_id"])

    attempts = list(db["attempt"].find({"user_id": learner_id, "quiz_id": quiz_id}).sort("attempt_number", -1))
    max_attempts = quiz.get("max_attempts", 3)
    best = best_attempt(attempts)

    return {
        "attempts": [attempt_view(a) for a in attempts],
        "summary": {
            "totalAttempts": len(attempts),
            "maxAttempts": max_attempts,
            "attemptsRemaining": max(0, max_attempts - len(attempts)),
            "hasPassed": any(a.get("passed") for a in attempts),
            "bestScore": best["score"] if best else 0,
            "bestPercentage": best["percentage"] if best else 0,
        },
    }


def delete_attempt(db, attempt_id: str, caller: Caller) -> None:
    caller.require(MANAGE_ATTEMPTS, "Only admin can delete quiz attempts")
    deleted = db["attempt"].find_one_and_delete({"_id": parse_object_id(attempt_id, "attempt ID")})
    if not deleted:
        raise NotFound("Quiz attempt not found")
    logger.info("Attempt %s deleted by %s", attempt_id, caller.user_id)


def list_all_attempts(db, caller: Caller, quiz_id: Optional[str] = None, user_id: Optional[str] = None,
                      course_id: Optional[str] = None, passed: Optional[bool] = None,
                      page: int = 1, limit: int = 10, sort_by: str = "createdAt", sort_order: str = "desc") -> dict:
    caller.require(MANAGE_ATTEMPTS, "Only admin can view all quiz attempts")
    sort = sort_spec(ADMIN_SORT_FIELDS, sort_by, sort_order)

    query = {}
    if quiz_id:
        query["quiz_id"] = quiz_id
    if user_id:
        query["user_id"] = user_id
    if course_id:
        query["course_id"] = course_id
    if passed is not None:
        query["passed"] = passed

    page = max(1, page)
    limit = max(1, limit)
    total = db["attempt"].count_documents(query)
    docs = (
        db["attempt"].find(query)
        .sort(sort)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return {
        "attempts": [attempt_view(a) for a in docs],
        "pagination": page_info(page, limit, total, "totalAttempts"),
    }


def attempt_stats(db, quiz_id: str, caller: Caller) -> dict:
    """Aggregate results of all submitted attempts on a quiz."""
    caller.require(MANAGE_ATTEMPTS, "Only admin can view quiz attempt statistics")
    quiz = _find_quiz(db, quiz_id)
    quiz_id = str(quiz["_id"])

    attempts = list(db["attempt"].find({"quiz_id": quiz_id, "status": SUBMITTED}))
    total = len(attempts)
    stats = {
        "totalAttempts": total,
        "uniqueUsers": len({a["user_id"] for a in attempts}),
        "passedAttempts": sum(1 for a in attempts if a.get("passed")),
        "passRate": 0,
        "averageScore": 0,
        "averagePercentage": 0,
        "averageTimeTaken": 0,
        "highestScore": 0,
        "lowestScore": 0,
        "difficultQuestions": [],
    }
    if not total:
        return stats

    scores = [a.get("score", 0) for a in attempts]
    stats.update({
        "passRate": percent(stats["passedAttempts"], total),
        "averageScore": sum(scores) / total,
        "averagePercentage": round_half_up(sum(a.get("percentage", 0) for a in attempts), total),
        "averageTimeTaken": round_half_up(sum(a.get("time_taken", 0) for a in attempts), total),
        "highestScore": max(scores),
        "lowestScore": min(scores),
    })

    answered = defaultdict(lambda: [0, 0])
    for attempt in attempts:
        for record in attempt.get("answers") or []:
            counts = answered[record["question_id"]]
            counts[0] += 1
            if record.get("is_correct"):
                counts[1] += 1

    ranked = sorted(answered.items(), key=lambda item: item[1][1] / item[1][0])[:HARDEST_QUESTIONS]
    ids = [parse_object_id(qid, "question ID") for qid, _ in ranked]
    texts = {str(q["_id"]): q.get("question_text") for q in db["question"].find({"_id": {"$in": ids}})}

    stats["difficultQuestions"] = [
        {
            "questionId": qid,
            "questionText": texts.get(qid, "Question not found"),
            "totalAnswers": total_answers,
            "correctAnswers": correct,
            "incorrectAnswers": total_answers - correct,
            "correctPercentage": percent(correct, total_answers),
        }
        for qid, (total_answers, correct) in ranked
    ]
    return stats
