"""
Approval State Machine.

Per chapter:  OPEN/DRAFT --submit--> SUBMITTED --approve--> APPROVED
                               SUBMITTED --revision--> REVISION --submit--> SUBMITTED
                               SUBMITTED --withdraw--> DRAFT
                               APPROVED --unapprove--> SUBMITTED
Per paper:    final document  none -> UPLOADED -> APPROVED | REVISION
              then integrity verification, then examiner grading.

Every write re-derives the chapter's gate from the current schedules;
client-supplied statuses are never trusted.
"""
import copy
import math

from flask import current_app
from sqlalchemy import select
from sqlalchemy.orm.attributes import flag_modified

from .. import db
from ..assignments.structure import template_chapters
from ..errors import Forbidden, GateViolation, NotFound, ValidationFailed
from ..integrity.services import clear_integrity, integrity_summary, run_consistency_check
from ..models import (
    CHAPTER_APPROVED, CHAPTER_DRAFT, CHAPTER_LOCKED, CHAPTER_OPEN, CHAPTER_REVISION,
    CHAPTER_SUBMITTED, CONSISTENCY_REJECTED, FINAL_APPROVED, FINAL_REVISION,
    FINAL_UPLOADED, Paper, User, utc_now,
)
from ..settings import get_setting
from ..storage import delete_document, save_final_document
from ..text_utils import count_words, normalize_title
from ..violations.services import is_locked, lock_state
from .gates import assignment_window, has_content, match_schedule, resolve_chapters, resolve_window

CHAPTER_DECISIONS = (CHAPTER_APPROVED, CHAPTER_REVISION)
FINAL_DECISIONS = (FINAL_APPROVED, FINAL_REVISION)
STAFF_ROLES = {"admin", "super_admin", "verifier", "examiner", "helper"}
ADVISOR_OVERRIDE_ROLES = {"admin", "super_admin"}


# ==========================================
# LOOKUPS & ACCESS
# ==========================================

def get_paper_record(paper_id):
    paper = db.session.get(Paper, paper_id)
    if not paper:
        raise NotFound(f"Paper {paper_id} not found")
    return paper


def _role(actor):
    return getattr(actor, "normalized_role", "")


def can_view(paper, actor):
    role = _role(actor)
    if role in STAFF_ROLES:
        return True
    if role == "student":
        return paper.user_id_fk == actor.user_id
    if role == "advisor":
        return paper.student.advisor_id_fk == actor.user_id
    return False


def _require_owner(paper, actor, bypass_gates):
    if bypass_gates:
        return
    if paper.user_id_fk != getattr(actor, "user_id", None):
        raise Forbidden("Only the paper's author can do this")


def _require_advisor(paper, actor):
    role = _role(actor)
    if role in ADVISOR_OVERRIDE_ROLES:
        return
    if role != "advisor" or paper.student.advisor_id_fk != actor.user_id:
        raise Forbidden("Only the student's assigned advisor can decide on this paper")


def _require_not_graded(paper, bypass_gates):
    if paper.grade is not None and not bypass_gates:
        raise GateViolation("Paper has been graded and is read-only")


def _chapter_at(paper, index):
    chapters = paper.chapters
    if not isinstance(index, int) or index < 0 or index >= len(chapters):
        raise NotFound(f"Chapter {index} not found in paper {paper.paper_id}")
    return copy.deepcopy(chapters[index])


def _window_for(paper, chapter, now):
    assignment = paper.assignment
    match = match_schedule(chapter, assignment.schedules)
    fallback = assignment_window(assignment)
    return match.schedule, fallback, resolve_window(match.schedule, fallback, now)


def _write_chapter(paper, index, chapter):
    structure = copy.deepcopy(paper.chapters)
    structure[index] = chapter
    paper.structure = structure
    paper.word_count = sum(int(ch.get("word_count") or 0) for ch in structure)
    flag_modified(paper, "structure")


def _history_entry(status, feedback, actor, now):
    return {
        "status": status,
        "feedback": feedback,
        "timestamp": now.isoformat(),
        "actor": getattr(actor, "user_id", None),
    }


# ==========================================
# READS
# ==========================================

def _find_chapter(chapters, wanted):
    wanted_id = wanted.get("id")
    for ch in chapters:
        if wanted_id and ch.get("id") and str(ch["id"]) == str(wanted_id):
            return ch
    title = normalize_title(wanted.get("title"))
    for ch in chapters:
        if title and normalize_title(ch.get("title")) == title:
            return ch
    return None


def sync_structure(paper):
    """Append template chapters the paper is missing. Never removes or reorders."""
    template = paper.assignment.template
    if not template:
        return False
    structure = copy.deepcopy(paper.chapters)
    added = []
    for master in template_chapters(template.pages):
        if _find_chapter(structure, master) is None:
            structure.append(master)
            added.append(master["title"])
    if not added:
        return False
    paper.structure = structure
    paper.total_words = sum(int(ch.get("min_words") or 0) for ch in structure)
    flag_modified(paper, "structure")
    db.session.commit()
    current_app.logger.info("Paper %s synced with template, added chapters: %s", paper.paper_id, added)
    return True


def effective_chapters(paper, now=None):
    assignment = paper.assignment
    return resolve_chapters(paper.chapters, assignment.schedules, assignment_window(assignment), now or utc_now())


def serialize_paper(paper, now=None, include_content=True):
    chapters = effective_chapters(paper, now)
    if not include_content:
        for ch in chapters:
            ch.pop("content", None)
    grade = paper.grade
    passing = get_setting("passing_grade")
    return {
        "id": paper.paper_id,
        "assignment_id": paper.assignment_id_fk,
        "user_id": paper.user_id_fk,
        "student_name": paper.student.full_name or paper.student.username,
        "title": paper.title,
        "subject": paper.subject,
        "word_count": paper.word_count,
        "total_words": paper.total_words,
        "chapters": chapters,
        "content_approval_status": paper.content_approval_status,
        "final_submission_unlocked": paper.final_submission_unlocked,
        "final_document": {
            "url": paper.final_file_url,
            "filename": paper.final_file_name,
            "size": paper.final_file_size,
            "uploaded_at": paper.final_uploaded_at.isoformat() if paper.final_uploaded_at else None,
        } if paper.final_file_url else None,
        "final_status": paper.final_status,
        "final_feedback": paper.final_feedback,
        "integrity": integrity_summary(paper),
        "grade": grade,
        "grade_feedback": paper.grade_feedback,
        "passed": (grade >= passing) if grade is not None else None,
        "editor": lock_state(paper.user_id_fk),
    }


def get_paper(paper_id, actor):
    paper = get_paper_record(paper_id)
    if not can_view(paper, actor):
        raise Forbidden("You cannot view this paper")
    sync_structure(paper)
    return paper


def list_papers(actor, assignment_id=None, user_id=None):
    q = select(Paper)
    role = _role(actor)
    if role == "student":
        # Students only ever see their own papers
        q = q.filter(Paper.user_id_fk == actor.user_id)
    elif role == "advisor":
        q = q.join(User, User.user_id == Paper.user_id_fk).filter(User.advisor_id_fk == actor.user_id)
        if user_id:
            q = q.filter(Paper.user_id_fk == user_id)
    elif user_id:
        q = q.filter(Paper.user_id_fk == user_id)
    if assignment_id:
        q = q.filter(Paper.assignment_id_fk == assignment_id)
    return db.session.execute(q.order_by(Paper.updated_at.desc(), Paper.paper_id.desc())).scalars().all()


# ==========================================
# STUDENT CHAPTER ACTIONS
# ==========================================

def _check_editable(paper, chapter, now, bypass_gates, action):
    stored = chapter.get("status")
    if stored == CHAPTER_APPROVED:
        raise GateViolation(f"Cannot {action}: chapter '{chapter['title']}' is approved and immutable")
    if stored == CHAPTER_SUBMITTED:
        raise GateViolation(f"Cannot {action}: chapter '{chapter['title']}' is awaiting advisor review")
    if bypass_gates:
        return
    _, _, window = _window_for(paper, chapter, now)
    if window == CHAPTER_LOCKED:
        raise GateViolation(f"Cannot {action}: chapter '{chapter['title']}' is locked")
    if is_locked(paper.user_id_fk):
        raise GateViolation(f"Cannot {action}: editor locked after too many integrity violations")


def save_chapter_draft(paper_id, chapter_index, content, actor, now=None, bypass_gates=False):
    if content is None:
        content = ""
    if not isinstance(content, str):
        raise ValidationFailed("content must be a string")
    now = now or utc_now()
    paper = get_paper_record(paper_id)
    _require_owner(paper, actor, bypass_gates)
    _require_not_graded(paper, bypass_gates)
    chapter = _chapter_at(paper, chapter_index)
    _check_editable(paper, chapter, now, bypass_gates, "save")

    chapter["content"] = content
    chapter["word_count"] = count_words(content)
    if chapter.get("status") != CHAPTER_REVISION:
        chapter["status"] = CHAPTER_DRAFT if has_content(chapter) else CHAPTER_OPEN
    _write_chapter(paper, chapter_index, chapter)
    db.session.commit()
    return paper


def submit_chapter(paper_id, chapter_index, actor, now=None, bypass_gates=False):
    now = now or utc_now()
    paper = get_paper_record(paper_id)
    _require_owner(paper, actor, bypass_gates)
    _require_not_graded(paper, bypass_gates)
    chapter = _chapter_at(paper, chapter_index)
    _check_editable(paper, chapter, now, bypass_gates, "submit")

    if not paper.student.advisor_id_fk:
        raise ValidationFailed("Cannot submit: no advisor is assigned to this student")
    words = count_words(chapter.get("content"))
    need = int(chapter.get("min_words") or 0)
    if words < need:
        raise ValidationFailed(f"minimum word count not met: need {need}, have {words}")

    chapter["word_count"] = words
    chapter["status"] = CHAPTER_SUBMITTED
    chapter["submitted_at"] = now.isoformat()
    _write_chapter(paper, chapter_index, chapter)
    db.session.commit()
    current_app.logger.info("Paper %s chapter %s submitted", paper.paper_id, chapter_index)
    return paper


def withdraw_submission(paper_id, chapter_index, actor, bypass_gates=False):
    paper = get_paper_record(paper_id)
    _require_owner(paper, actor, bypass_gates)
    chapter = _chapter_at(paper, chapter_index)
    if chapter.get("status") != CHAPTER_SUBMITTED:
        raise GateViolation("Only a submitted, undecided chapter can be withdrawn")
    chapter["status"] = CHAPTER_DRAFT
    chapter.pop("submitted_at", None)
    _write_chapter(paper, chapter_index, chapter)
    db.session.commit()
    current_app.logger.info("Paper %s chapter %s submission withdrawn", paper.paper_id, chapter_index)
    return paper


# ==========================================
# ADVISOR CHAPTER ACTIONS
# ==========================================

def decide_chapter(paper_id, chapter_index, decision, feedback, actor, now=None):
    decision = (decision or "").strip().upper()
    if decision not in CHAPTER_DECISIONS:
        raise ValidationFailed("Decision must be APPROVED or REVISION")
    feedback = (feedback or "").strip()
    if decision == CHAPTER_REVISION and not feedback:
        raise ValidationFailed("Revision feedback is required")

    now = now or utc_now()
    paper = get_paper_record(paper_id)
    _require_advisor(paper, actor)
    chapter = _chapter_at(paper, chapter_index)
    if chapter.get("status") != CHAPTER_SUBMITTED:
        raise GateViolation(f"Only submitted chapters can be decided (current: {chapter.get('status')})")

    chapter["status"] = decision
    chapter["feedback"] = feedback or None
    chapter["decided_by"] = actor.user_id
    chapter["decided_at"] = now.isoformat()
    chapter["feedback_history"] = list(chapter.get("feedback_history") or []) + [
        _history_entry(decision, feedback or None, actor, now)
    ]
    _write_chapter(paper, chapter_index, chapter)
    db.session.commit()
    current_app.logger.info("Paper %s chapter %s %s by %s", paper.paper_id, chapter_index, decision, actor.user_id)
    return paper


def unapprove_chapter(paper_id, chapter_index, actor, reason=None, now=None):
    """Advisor reversal of a mistaken approval; the chapter goes back to review."""
    now = now or utc_now()
    paper = get_paper_record(paper_id)
    _require_advisor(paper, actor)
    if paper.grade is not None:
        raise GateViolation("Cannot unapprove: paper has already been graded")
    chapter = _chapter_at(paper, chapter_index)
    if chapter.get("status") != CHAPTER_APPROVED:
        raise GateViolation("Only an approved chapter can be unapproved")

    reason = (reason or "").strip() or None
    chapter["status"] = CHAPTER_SUBMITTED
    chapter["feedback_history"] = list(chapter.get("feedback_history") or []) + [
        _history_entry(CHAPTER_SUBMITTED, reason, actor, now)
    ]
    _write_chapter(paper, chapter_index, chapter)

    # Content is no longer fully approved, so a decided final document goes back to pending
    if paper.final_status in FINAL_DECISIONS:
        paper.final_status = FINAL_UPLOADED if paper.final_file_url else None
        paper.final_feedback = None
        paper.final_decided_at = None
        paper.final_decided_by = None
        clear_integrity(paper)
    db.session.commit()
    current_app.logger.info("Paper %s chapter %s unapproved by %s", paper.paper_id, chapter_index, actor.user_id)
    return paper


# ==========================================
# FINAL DOCUMENT
# ==========================================

def _approved_count(paper):
    return sum(1 for ch in paper.chapters if ch.get("status") == CHAPTER_APPROVED)


def upload_final_document(paper_id, file_storage, actor, now=None, bypass_gates=False):
    now = now or utc_now()
    paper = get_paper_record(paper_id)
    _require_owner(paper, actor, bypass_gates)
    _require_not_graded(paper, bypass_gates)
    if not paper.final_submission_unlocked and not bypass_gates:
        raise GateViolation(
            f"Final submission is locked: {_approved_count(paper)} of {len(paper.chapters)} chapters approved"
        )
    if paper.final_status == FINAL_APPROVED:
        raise GateViolation("An approved final document cannot be replaced")

    stored = save_final_document(file_storage, paper.paper_id)
    previous_url = paper.final_file_url
    paper.final_file_url = stored["url"]
    paper.final_file_name = stored["name"]
    paper.final_file_size = stored["size"]
    paper.final_uploaded_at = now
    paper.final_status = FINAL_UPLOADED
    paper.final_feedback = None
    paper.final_decided_at = None
    paper.final_decided_by = None
    clear_integrity(paper)
    db.session.commit()
    if previous_url and previous_url != stored["url"]:
        delete_document(previous_url)
    current_app.logger.info("Paper %s final document uploaded (%s bytes)", paper.paper_id, stored["size"])
    return paper


def delete_final_document(paper_id, actor, bypass_gates=False):
    paper = get_paper_record(paper_id)
    _require_owner(paper, actor, bypass_gates)
    if not paper.final_file_url:
        raise NotFound("No final document has been uploaded")
    if paper.final_status == FINAL_APPROVED:
        raise GateViolation("An approved final document cannot be deleted")
    _require_not_graded(paper, bypass_gates)

    url = paper.final_file_url
    paper.final_file_url = None
    paper.final_file_name = None
    paper.final_file_size = None
    paper.final_uploaded_at = None
    paper.final_status = None
    paper.final_feedback = None
    paper.final_decided_at = None
    paper.final_decided_by = None
    clear_integrity(paper)
    db.session.commit()
    delete_document(url)
    current_app.logger.info("Paper %s final document deleted", paper.paper_id)
    return paper


def decide_final_document(paper_id, decision, feedback, actor, now=None):
    decision = (decision or "").strip().upper()
    if decision not in FINAL_DECISIONS:
        raise ValidationFailed("Decision must be APPROVED or REVISION")
    feedback = (feedback or "").strip()
    if decision == FINAL_REVISION and not feedback:
        raise ValidationFailed("Revision feedback is required")

    now = now or utc_now()
    paper = get_paper_record(paper_id)
    _require_advisor(paper, actor)
    if paper.final_status != FINAL_UPLOADED:
        raise GateViolation("There is no uploaded final document awaiting a decision")
    if not paper.final_submission_unlocked:
        raise GateViolation("Final document cannot be decided while chapters are not all approved")

    paper.final_status = decision
    paper.final_feedback = feedback or None
    paper.final_decided_at = now
    paper.final_decided_by = actor.user_id
    db.session.commit()
    current_app.logger.info("Paper %s final document %s by %s", paper.paper_id, decision, actor.user_id)

    if decision == FINAL_APPROVED:
        run_consistency_check(paper)
    return paper


# ==========================================
# GRADING
# ==========================================

def grade_paper(paper_id, score, feedback, actor, now=None, bypass_gates=False):
    try:
        score = float(score)
    except (TypeError, ValueError):
        raise ValidationFailed("Grade must be a number between 0 and 100")
    if not math.isfinite(score) or score < 0 or score > 100:
        raise ValidationFailed("Grade must be a number between 0 and 100")

    paper = get_paper_record(paper_id)
    if not bypass_gates:
        if paper.final_status != FINAL_APPROVED:
            raise GateViolation("Paper cannot be graded before its final document is approved")
        if paper.consistency_status == CONSISTENCY_REJECTED:
            raise GateViolation("Paper cannot be graded: integrity verification rejected the final document")

    # Re-grading overwrites
    paper.grade = score
    paper.grade_feedback = (feedback or "").strip() or None
    paper.graded_by = actor.user_id
    paper.graded_at = now or utc_now()
    db.session.commit()
    current_app.logger.info("Paper %s graded %s by %s", paper.paper_id, score, actor.user_id)
    return paper
