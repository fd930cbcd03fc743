import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import attempts
import progress
import scoring
from auth import Caller, get_caller
from database import ensure_indexes, get_db
from errors import ApiError
from schemas import ProgressTotals, QuizProgressUpdate, SubmitAttemptBody

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes(get_db())
    yield


app = FastAPI(title="Quiz Attempt API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Helpers
def respond(data, message: str, status_code: int = 200):
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"success": True, "message": message, "data": data}),
    )


def fail(status_code: int, message: str):
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


def require_db(db=Depends(get_db)):
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


@app.exception_handler(ApiError)
async def handle_api_error(request, exc: ApiError):
    return fail(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def handle_http_exception(request, exc: StarletteHTTPException):
    return fail(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        where = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"Invalid input: {where} {first.get('msg', '')}".strip()
    else:
        message = "Invalid input"
    return fail(400, message)


@app.exception_handler(PyMongoError)
async def handle_database_error(request, exc: PyMongoError):
    logger.exception("Database operation failed")
    return fail(500, "Database operation failed")


@app.get("/")
def read_root():
    return {"message": "Quiz Attempt API running"}


# Quiz attempts
quiz_attempts = APIRouter(prefix="/api/v1/quiz-attempts")


@quiz_attempts.post("/start/{quiz_id}")
def start_quiz_attempt(quiz_id: str, caller: Caller = Depends(get_caller), db=Depends(require_db)):
    data = attempts.start_attempt(db, caller.user_id, quiz_id)
    return respond(data, "Quiz attempt started successfully", 201)


@quiz_attempts.post("/submit/{attempt_id}")
def submit_quiz_attempt(attempt_id: str, payload: SubmitAttemptBody,
                        caller: Caller = Depends(get_caller), db=Depends(require_db)):
    attempt = scoring.submit_attempt(db, attempt_id, caller.user_id, payload.answers)
    return respond(attempts.submission_view(attempt), "Quiz attempt submitted successfully")


@quiz_attempts.get("/quiz/{quiz_id}/my-attempts")
def get_my_quiz_attempts(quiz_id: str, caller: Caller = Depends(get_caller), db=Depends(require_db)):
    data = attempts.list_attempts(db, caller.user_id, quiz_id)
    return respond(data, "Quiz attempts fetched successfully")


@quiz_attempts.get("/admin/all")
def get_all_quiz_attempts(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                          quiz_id: Optional[str] = Query(None, alias="quizId"),
                          user_id: Optional[str] = Query(None, alias="userId"),
                          course_id: Optional[str] = Query(None, alias="courseId"),
                          passed: Optional[bool] = None,
                          sort_by: str = Query("createdAt", alias="sortBy"),
                          sort_order: str = Query("desc", alias="sortOrder"),
                          caller: Caller = Depends(get_caller), db=Depends(require_db)):
    data = attempts.list_all_attempts(
        db, caller, quiz_id=quiz_id, user_id=user_id, course_id=course_id, passed=passed, page=page, limit=limit,
        sort_by=sort_by, sort_order=sort_order,
    )
    return respond(data, "All quiz attempts fetched successfully")


@quiz_attempts.get("/admin/quiz/{quiz_id}/stats")
def get_quiz_attempt_stats(quiz_id: str, caller: Caller = Depends(get_caller), db=Depends(require_db)):
    data = attempts.attempt_stats(db, quiz_id, caller)
    return respond(data, "Quiz attempt statistics fetched successfully")


@quiz_attempts.delete("/admin/{attempt_id}")
def delete_quiz_attempt(attempt_id: str, caller: Caller = Depends(get_caller), db=Depends(require_db)):
    attempts.delete_attempt(db, attempt_id, caller)
    return respond({}, "Quiz attempt deleted successfully")


@quiz_attempts.get("/{attempt_id}")
def get_quiz_attempt_details(attempt_id: str, caller: Caller = Depends(get_caller), db=Depends(require_db)):
    data = attempts.attempt_details(db, attempt_id, caller.user_id)
    return respond(data, "Quiz attempt details fetched successfully")


# Progress
progress_routes = APIRouter(prefix="/api/v1/progress")


@progress_routes.get("/course/{course_id}/stats")
def get_course_progress_stats(course_id: str, db=Depends(require_db)):
    data = progress.course_progress_stats(db, course_id)
    return respond(data, "Course progress statistics fetched successfully")


@progress_routes.get("/my-progress")
def get_my_progress(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                    sort_by: str = Query("updatedAt", alias="sortBy"),
                    sort_order: str = Query("desc", alias="sortOrder"),
                    caller: Caller = Depends(get_caller), db=Depends(require_db)):
    data = progress.list_my_progress(
        db, caller.user_id, page=page, limit=limit, sort_by=sort_by, sort_order=sort_order,
    )
    return respond(data, "User progress fetched successfully")


@progress_routes.get("/course/{course_id}")
def get_course_progress(course_id: str, caller: Caller = Depends(get_caller), db=Depends(require_db)):
    row = progress.get_course_progress(db, caller.user_id, course_id)
    return respond(progress.progress_view(row), "Course progress fetched successfully")


@progress_routes.post("/course/{course_id}")
def create_or_update_progress(course_id: str, totals: ProgressTotals,
                              caller: Caller = Depends(get_caller), db=Depends(require_db)):
    row = progress.upsert_progress(db, caller.user_id, course_id, totals)
    return respond(progress.progress_view(row), "Progress created/updated successfully", 201)


@progress_routes.patch("/course/{course_id}/lesson/{lesson_id}/complete")
def mark_lesson_completed(course_id: str, lesson_id: str,
                          caller: Caller = Depends(get_caller), db=Depends(require_db)):
    row, newly_completed = progress.mark_lesson_completed(db, caller.user_id, course_id, lesson_id)
    message = "Lesson marked as completed successfully" if newly_completed else "Lesson already completed"
    return respond(progress.progress_view(row), message)


@progress_routes.patch("/course/{course_id}/quiz")
def update_quiz_progress(course_id: str, payload: QuizProgressUpdate,
                         caller: Caller = Depends(get_caller), db=Depends(require_db)):
    row = progress.update_quiz_progress(db, caller.user_id, course_id, payload.passed_quizzes)
    return respond(progress.progress_view(row), "Quiz progress updated successfully")


@progress_routes.patch("/course/{course_id}/reset")
def reset_course_progress(course_id: str, caller: Caller = Depends(get_caller), db=Depends(require_db)):
    row = progress.reset_progress(db, caller.user_id, course_id)
    return respond(progress.progress_view(row), "Course progress reset successfully")


@progress_routes.get("/admin/all")
def get_all_progress(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                     course_id: Optional[str] = Query(None, alias="courseId"),
                     user_id: Optional[str] = Query(None, alias="userId"),
                     sort_by: str = Query("updatedAt", alias="sortBy"),
                     sort_order: str = Query("desc", alias="sortOrder"),
                     caller: Caller = Depends(get_caller), db=Depends(require_db)):
    data = progress.list_all_progress(
        db, caller, course_id=course_id, user_id=user_id, page=page, limit=limit,
        sort_by=sort_by, sort_order=sort_order,
    )
    return respond(data, "All progress fetched successfully")


@progress_routes.delete("/admin/{progress_id}")
def delete_progress(progress_id: str, caller: Caller = Depends(get_caller), db=Depends(require_db)):
    progress.delete_progress(db, progress_id, caller)
    return respond({}, "Progress deleted successfully")


app.include_router(quiz_attempts)
app.include_router(progress_routes)


@app.get("/test")
def test_database(db=Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = db.name if hasattr(db, 'name') else "✅ Connected"
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
