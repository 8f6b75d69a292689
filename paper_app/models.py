from datetime import datetime, timezone
from . import db

def utc_now():
    # Naive UTC: SQLite drops tzinfo, so every stored and compared timestamp is naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)

from flask_login import UserMixin

# Chapter lifecycle tags
CHAPTER_LOCKED = "LOCKED"
CHAPTER_OPEN = "OPEN"
CHAPTER_DRAFT = "DRAFT"
CHAPTER_SUBMITTED = "SUBMITTED"
CHAPTER_APPROVED = "APPROVED"
CHAPTER_REVISION = "REVISION"
CHAPTER_STATUSES = (
    CHAPTER_LOCKED, CHAPTER_OPEN, CHAPTER_DRAFT,
    CHAPTER_SUBMITTED, CHAPTER_APPROVED, CHAPTER_REVISION,
)

# Final document stage (None means nothing uploaded)
FINAL_UPLOADED = "UPLOADED"
FINAL_APPROVED = "APPROVED"
FINAL_REVISION = "REVISION"

# Integrity verification
CONSISTENCY_PENDING = "PENDING_VERIFICATION"
CONSISTENCY_ERROR = "CHECK_ERROR"
CONSISTENCY_VERIFIED = "VERIFIED"
CONSISTENCY_REJECTED = "REJECTED"

# Assignment manual status flag
ASSIGNMENT_DRAFT = "DRAFT"
ASSIGNMENT_SCHEDULED = "SCHEDULED"
ASSIGNMENT_COMPLETED = "COMPLETED"

ROLES = ("student", "advisor", "verifier", "examiner", "admin", "super_admin", "helper")


# ==========================================
# PEOPLE
# ==========================================

class Batch(db.Model):
    """A student cohort; the audience unit of an assignment."""
    __tablename__ = "batches"
    batch_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    year = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=utc_now)

    students = db.relationship("User", backref="batch", lazy=True, foreign_keys="User.batch_id_fk")


class User(UserMixin, db.Model):
    __tablename__ = "users"
    user_id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(128), unique=True, nullable=False)
    full_name = db.Column(db.String(128))
    email = db.Column(db.String(128))
    password_hash = db.Column(db.String(256))
    role = db.Column(db.String(32), default="student")  # student, advisor, verifier, examiner, admin, super_admin, helper
    is_active = db.Column(db.Boolean, default=True)
    batch_id_fk = db.Column(db.Integer, db.ForeignKey("batches.batch_id"))
    # Students only: the advisor who reviews their chapters
    advisor_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    # Audit metric: how many times an admin reset this student's violations
    reset_count = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)

    advisor = db.relationship("User", remote_side=[user_id], backref="advisees", foreign_keys=[advisor_id_fk])

    def get_id(self):
        return str(self.user_id)

    @property
    def normalized_role(self):
        return (self.role or "").strip().lower()


# ==========================================
# TEMPLATES & ASSIGNMENTS
# ==========================================

class PaperTemplate(db.Model):
    """
    Authoring output of the template editor.
    `pages` is a list of page dicts; a page may carry a `structure` list of
    chapter definitions ({id, title, minWords, subsections: [...]}).
    """
    __tablename__ = "paper_templates"
    template_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    pages = db.Column(db.JSON, default=list)
    created_at = db.Column(db.DateTime, default=utc_now)


class Assignment(db.Model):
    __tablename__ = "assignments"
    assignment_id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    subject = db.Column(db.String(255), nullable=False)
    template_id_fk = db.Column(db.Integer, db.ForeignKey("paper_templates.template_id"))
    # Null batch means "all students"
    batch_id_fk = db.Column(db.Integer, db.ForeignKey("batches.batch_id"))
    activation_date = db.Column(db.DateTime)
    deadline = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(16), default=ASSIGNMENT_DRAFT)
    created_by = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    template = db.relationship("PaperTemplate", lazy=True)
    batch = db.relationship("Batch", lazy=True)
    schedules = db.relationship(
        "ChapterSchedule", backref="assignment", lazy=True,
        cascade="all, delete-orphan", order_by="ChapterSchedule.schedule_id",
    )
    papers = db.relationship("Paper", backref="assignment", lazy=True, cascade="all, delete-orphan")


class ChapterSchedule(db.Model):
    __tablename__ = "chapter_schedules"
    schedule_id = db.Column(db.Integer, primary_key=True)
    assignment_id_fk = db.Column(db.Integer, db.ForeignKey("assignments.assignment_id"), nullable=False)
    # Structural chapter id from the template; may be missing on older templates
    chapter_id = db.Column(db.String(64))
    chapter_title = db.Column(db.String(255), nullable=False)
    # Master switch: False force-closes the chapter whatever the window says
    is_open = db.Column(db.Boolean, default=True, nullable=False)
    open_date = db.Column(db.DateTime)
    close_date = db.Column(db.DateTime)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)


# ==========================================
# PAPERS
# ==========================================

class Paper(db.Model):
    """
    One student's instance of an assignment.
    `structure` is the denormalized chapter list; each chapter record is a dict:
    {id, key, title, min_words, subsections, content, word_count, status,
     feedback, feedback_history: [{status, feedback, timestamp, actor}]}
    """
    __tablename__ = "papers"
    paper_id = db.Column(db.Integer, primary_key=True)
    assignment_id_fk = db.Column(db.Integer, db.ForeignKey("assignments.assignment_id"), nullable=False)
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    subject = db.Column(db.String(255))
    structure = db.Column(db.JSON, default=list)
    word_count = db.Column(db.Integer, default=0)
    total_words = db.Column(db.Integer, default=0)

    # Final document pointer
    final_file_url = db.Column(db.String(512))
    final_file_name = db.Column(db.String(255))
    final_file_size = db.Column(db.Integer)
    final_uploaded_at = db.Column(db.DateTime)
    final_status = db.Column(db.String(16))  # None, UPLOADED, APPROVED, REVISION
    final_feedback = db.Column(db.Text)
    final_decided_at = db.Column(db.DateTime)
    final_decided_by = db.Column(db.Integer, db.ForeignKey("users.user_id"))

    # Integrity verification
    consistency_score = db.Column(db.Float)
    consistency_status = db.Column(db.String(32))
    consistency_log = db.Column(db.JSON)
    verified_by = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    verified_at = db.Column(db.DateTime)
    verification_note = db.Column(db.Text)

    # Examiner grading
    grade = db.Column(db.Float)
    grade_feedback = db.Column(db.Text)
    graded_by = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    graded_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    student = db.relationship("User", foreign_keys=[user_id_fk], lazy=True)

    __table_args__ = (
        db.UniqueConstraint("assignment_id_fk", "user_id_fk", name="uq_paper_assignment_student"),
    )

    @property
    def chapters(self):
        return list(self.structure or [])

    @property
    def final_submission_unlocked(self):
        """All chapters approved; an empty structure never unlocks."""
        chapters = self.chapters
        return bool(chapters) and all(ch.get("status") == CHAPTER_APPROVED for ch in chapters)

    @property
    def content_approval_status(self):
        chapters = self.chapters
        statuses = [ch.get("status") for ch in chapters]
        if CHAPTER_REVISION in statuses:
            return CHAPTER_REVISION
        if self.final_submission_unlocked:
            return CHAPTER_APPROVED
        if CHAPTER_SUBMITTED in statuses:
            return CHAPTER_SUBMITTED
        return "IN_PROGRESS"


# ==========================================
# INTEGRITY
# ==========================================

class Violation(db.Model):
    __tablename__ = "violations"
    violation_id = db.Column(db.Integer, primary_key=True)
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False, index=True)
    violation_type = db.Column(db.String(64), nullable=False)
    description = db.Column(db.Text)
    resolved = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    resolved_at = db.Column(db.DateTime)


class SystemConfig(db.Model):
    """
    Key-Value store for runtime-tunable workflow settings
    (violation_threshold, integrity_tolerance, passing_grade).
    """
    __tablename__ = "system_config"
    config_key = db.Column(db.String(64), primary_key=True)
    config_value = db.Column(db.Text)
    description = db.Column(db.String(255))
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)
