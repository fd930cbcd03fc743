"""
Database Schemas for the Quiz Attempt service

Each Pydantic model represents a collection in MongoDB. The collection name
is the lowercase of the class name (e.g., Attempt -> "attempt").

Course, Quiz and Question documents are owned by the course administration
service; this service only reads them.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

Difficulty = Literal["easy", "medium", "hard"]
AttemptStatus = Literal["started", "submitted"]

STARTED = "started"
SUBMITTED = "submitted"


class Quiz(BaseModel):
    """Quiz metadata and attempt policy (collection: quiz)"""
    course_id: str = Field(..., description="Reference to Course _id as string")
    title: str = Field(..., description="Quiz title")
    description: Optional[str] = Field(None, description="Short description of the quiz")
    passing_score: int = Field(70, ge=0, le=100, description="Minimum percentage needed to pass")
    time_limit: int = Field(30, ge=1, description="Time limit in minutes")
    max_attempts: int = Field(3, description="Attempts allowed per learner; 0 or less means unlimited")
    is_published: bool = Field(False, description="Visible to learners")
    order: int = Field(1, ge=1, description="Position of the quiz within its course")


class Question(BaseModel):
    """Single-choice question with exactly four options (collection: question)"""
    quiz_id: str = Field(..., description="Reference to Quiz _id as string")
    question_text: str = Field(..., description="Question prompt text")
    options: List[str] = Field(..., min_length=4, max_length=4, description="The four answer options")
    correct_answer: int = Field(..., ge=0, le=3, description="Index of the correct option")
    points: int = Field(1, ge=0, description="Points awarded for a correct answer")
    order: int = Field(..., ge=1, description="Position of the question within its quiz")
    explanation: Optional[str] = Field(None, description="Shown to learners who answered incorrectly")
    difficulty: Difficulty = "medium"


class AnswerRecord(BaseModel):
    """Scored answer embedded in a submitted attempt"""
    question_id: str
    selected_option: int = Field(..., ge=0, le=3)
    is_correct: bool
    points: int = Field(0, ge=0)


class Attempt(BaseModel):
    """A learner's attempt at a quiz (collection: attempt)

    course_id is copied from the quiz when the attempt starts and is not kept
    in sync afterwards.
    """
    user_id: str
    quiz_id: str
    course_id: str
    attempt_number: int = Field(..., ge=1)
    status: AttemptStatus = STARTED
    started_at: datetime
    submitted_at: Optional[datetime] = None
    answers: List[AnswerRecord] = Field(default_factory=list)
    score: int = Field(0, ge=0)
    max_score: int = Field(0, ge=0)
    percentage: int = Field(0, ge=0, le=100)
    passed: bool = False
    time_taken: int = Field(0, ge=0, description="Seconds between start and submission")


class CompletedLesson(BaseModel):
    lesson_id: str
    completed_at: datetime


class Progress(BaseModel):
    """A learner's completion record for one course (collection: progress)"""
    user_id: str
    course_id: str
    completed_lessons: List[CompletedLesson] = Field(default_factory=list)
    total_lessons: int = Field(0, ge=0)
    total_quizzes: int = Field(0, ge=0)
    passed_quizzes: int = Field(0, ge=0)
    completion_percentage: int = Field(0, ge=0, le=100)
    last_accessed_at: datetime


# Request bodies

class SubmittedAnswer(BaseModel):
    """One answer as sent by the client. Anything besides the question id and
    the selected option (isCorrect, points, ...) is ignored."""
    model_config = ConfigDict(populate_by_name=True)

    question: str
    selected_option: int = Field(..., alias="selectedOption")

    @field_validator("question", mode="before")
    @classmethod
    def question_as_str(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class SubmitAttemptBody(BaseModel):
    answers: List[SubmittedAnswer]


class ProgressTotals(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_lessons: Optional[int] = Field(None, ge=0, alias="totalLessons")
    total_quizzes: Optional[int] = Field(None, ge=0, alias="totalQuizzes")


class QuizProgressUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    passed_quizzes: int = Field(..., ge=0, alias="passedQuizzes")
