import os
from datetime import timedelta

import pytest
from werkzeug.security import generate_password_hash

from paper_app import create_app, db, cache
from paper_app.models import Assignment, Batch, ChapterSchedule, PaperTemplate, User, utc_now

PASSWORD = "secret"

THESIS_PAGES = [
    {"name": "Cover", "elements": []},
    {
        "name": "Body",
        "structure": [
            {"id": "c1", "title": "Introduction", "minWords": 5},
            {"id": "c2", "title": "Methods", "minWords": 3, "subsections": [{"title": "Sampling", "minWords": 2}]},
        ],
    },
]


@pytest.fixture(scope="session")
def temp_paths(tmp_path_factory):
    base = tmp_path_factory.mktemp("paper")
    db_path = str(base / "test.db").replace("\\", "/")
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"
    os.environ["UPLOAD_FOLDER"] = str(base / "uploads")
    os.environ["CSRF_ENABLED"] = "false"
    return base


@pytest.fixture(scope="session")
def app(temp_paths):
    app = create_app()
    app.config["TESTING"] = True
    return app


@pytest.fixture(autouse=True)
def fresh_db(app):
    with app.app_context():
        db.drop_all()
        db.create_all()
        cache.clear()
    yield


@pytest.fixture()
def ctx(app):
    with app.app_context():
        yield
        db.session.remove()


@pytest.fixture()
def client(app):
    return app.test_client()


# --- factories (call inside an app context) ---

def make_user(username, role="student", advisor=None, batch=None, full_name=None):
    u = User(
        username=username,
        full_name=full_name or username.title(),
        password_hash=generate_password_hash(PASSWORD),
        role=role,
        advisor_id_fk=advisor.user_id if advisor else None,
        batch_id_fk=batch.batch_id if batch else None,
    )
    db.session.add(u)
    db.session.commit()
    return u


def make_batch(name="2026"):
    b = Batch(name=name, year=2026)
    db.session.add(b)
    db.session.commit()
    return b


def make_template(pages=None, name="Thesis"):
    t = PaperTemplate(name=name, pages=THESIS_PAGES if pages is None else pages)
    db.session.add(t)
    db.session.commit()
    return t


def make_assignment(template=None, batch=None, activation=None, deadline=None, status="SCHEDULED", schedules=()):
    now = utc_now()
    a = Assignment(
        title="Research Paper",
        subject="Methodology",
        template_id_fk=template.template_id if template else None,
        batch_id_fk=batch.batch_id if batch else None,
        activation_date=activation or now - timedelta(days=1),
        deadline=deadline or now + timedelta(days=30),
        status=status,
    )
    db.session.add(a)
    db.session.flush()
    for s in schedules:
        db.session.add(ChapterSchedule(assignment_id_fk=a.assignment_id, **s))
    db.session.commit()
    return a


@pytest.fixture()
def people(ctx):
    """Advisor, two students in one batch, one outside it, plus staff accounts."""
    batch = make_batch()
    advisor = make_user("advisor", role="advisor")
    return {
        "batch": batch,
        "advisor": advisor,
        "alice": make_user("alice", advisor=advisor, batch=batch),
        "bob": make_user("bob", advisor=advisor, batch=batch),
        "carol": make_user("carol", advisor=advisor),
        "verifier": make_user("verifier", role="verifier"),
        "examiner": make_user("examiner", role="examiner"),
        "admin": make_user("admin", role="admin"),
        "helper": make_user("helper", role="helper"),
    }
