import mongomock
import pytest
from fastapi.testclient import TestClient

from database import ensure_indexes, get_db
from main import app
from tests.factories import add_course, add_question, add_quiz


@pytest.fixture
def db():
    database = mongomock.MongoClient()["quiz_attempts_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def course_id(db):
    return add_course(db)


@pytest.fixture
def quiz_id(db, course_id):
    return add_quiz(db, course_id)


@pytest.fixture
def question_ids(db, quiz_id):
    """Two one-point questions: the first is answered by option 1, the second by option 2."""
    return [
        add_question(db, quiz_id, 1, correct_answer=1, explanation="Assignment binds a name"),
        add_question(db, quiz_id, 2, correct_answer=2, explanation="Strings are immutable"),
    ]
