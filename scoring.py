"""
Scoring of submitted quiz attempts.

`score_answers` is the pure part: it grades the submitted answers against the
quiz's question set. `submit_attempt` wraps it with the attempt lifecycle:
ownership, time limit, and the one-time transition from "started" to
"submitted".

Only the question id and the selected option are taken from the client.
Correctness, points, score, percentage and the pass flag are always derived
here.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from pymongo import ReturnDocument

import progress
from errors import Conflict, InvalidInput, NotFound, TimeLimitExceeded
from schemas import STARTED, SUBMITTED, SubmittedAnswer
from utils import as_utc, parse_object_id, percent, utcnow

logger = logging.getLogger(__name__)

OPTION_COUNT = 4


@dataclass
class ScoreResult:
    answers: List[dict] = field(default_factory=list)
    score: int = 0
    max_score: int = 0
    percentage: int = 0


def question_points(question: dict) -> int:
    points = question.get("points")
    return 1 if points is None else int(points)


def score_answers(answers: List[SubmittedAnswer], questions: List[dict]) -> ScoreResult:
    """Grade answers against questions.

    Every question counts towards max_score, answered or not. Raises
    InvalidInput for a malformed or foreign question id, an option outside
    0..3, or a second answer to the same question.
    """
    by_id: Dict[str, dict] = {}
    max_score = 0
    for question in questions:
        by_id[str(question["_id"])] = question
        max_score += question_points(question)

    graded = []
    seen = set()
    score = 0
    for answer in answers:
        question_id = answer.question
        parse_object_id(question_id, "question ID")
        question = by_id.get(question_id)
        if question is None:
            raise InvalidInput(f"Question not found in this quiz: {question_id}")
        if question_id in seen:
            raise InvalidInput(f"Duplicate answer for question: {question_id}")
        seen.add(question_id)

        selected = answer.selected_option
        if selected < 0 or selected >= OPTION_COUNT:
            raise InvalidInput("Selected option must be between 0 and 3")

        is_correct = selected == question.get("correct_answer")
        points = question_points(question) if is_correct else 0
        score += points
        graded.append({
            "question_id": question_id,
            "selected_option": selected,
            "is_correct": is_correct,
            "points": points,
        })

    return ScoreResult(answers=graded, score=score, max_score=max_score,
                       percentage=percent(score, max_score))


def submit_attempt(db, attempt_id: str, learner_id: str, answers: List[SubmittedAnswer], now=None) -> dict:
    """Score and finalize an attempt, returning the stored document."""
    oid = parse_object_id(attempt_id, "attempt ID")

    attempt = db["attempt"].find_one({"_id": oid, "user_id": learner_id})
    if not attempt:
        raise NotFound("Quiz attempt not found")

    if attempt.get("status") == SUBMITTED:
        raise Conflict("Quiz attempt already submitted")

    quiz = db["quiz"].find_one({"_id": parse_object_id(attempt["quiz_id"], "quiz ID")})
    if not quiz:
        raise NotFound("Quiz not found")

    now = as_utc(now) if now else utcnow()
    time_taken = max(0, round((now - as_utc(attempt["started_at"])).total_seconds()))
    time_limit = quiz.get("time_limit", 30) or 0
    if time_limit > 0 and time_taken > time_limit * 60:
        logger.info("Attempt %s submitted after %ss, limit is %s minutes", attempt_id, time_taken, time_limit)
        raise TimeLimitExceeded("Time limit exceeded")

    questions = list(db["question"].find({"quiz_id": attempt["quiz_id"]}).sort("order", 1))
    if not questions:
        raise NotFound("No questions found for this quiz")

    result = score_answers(answers, questions)
    passed = result.percentage >= quiz.get("passing_score", 70)

    finalized = db["attempt"].find_one_and_update(
        {"_id": oid, "user_id": learner_id, "status": STARTED},
        {"$set": {
            "status": SUBMITTED,
            "answers": result.answers,
            "score": result.score,
            "max_score": result.max_score,
            "percentage": result.percentage,
            "passed": passed,
            "submitted_at": now,
            "time_taken": time_taken,
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    if finalized is None:
        # Another request finalized the attempt between our read and this write
        logger.warning("Concurrent submission rejected for attempt %s", attempt_id)
        raise Conflict("Quiz attempt already submitted")

    logger.info(
        "Attempt %s submitted by %s: score %s/%s (%s%%), passed=%s",
        attempt_id, learner_id, result.score, result.max_score, result.percentage, passed,
    )

    if passed:
        try:
            progress.on_quiz_passed(db, learner_id, attempt["course_id"], attempt["quiz_id"], now=now)
        except Exception:
            logger.exception("Progress update failed after attempt %s was passed", attempt_id)

    return finalized
