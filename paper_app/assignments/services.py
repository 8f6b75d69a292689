import copy
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .. import db
from ..errors import NotFound, ValidationFailed
from ..models import (
    ASSIGNMENT_COMPLETED, ASSIGNMENT_DRAFT, ASSIGNMENT_SCHEDULED, CHAPTER_APPROVED,
    Assignment, Batch, ChapterSchedule, Paper, PaperTemplate, User, utc_now,
)
from ..papers.gates import assignment_window, match_schedule, resolve_window
from ..text_utils import normalize_title
from .structure import load_pages, resolve_structure, template_chapters

ASSIGNMENT_STATUSES = (ASSIGNMENT_DRAFT, ASSIGNMENT_SCHEDULED, ASSIGNMENT_COMPLETED)


def parse_datetime(value, field):
    """ISO-8601 string or datetime -> naive UTC datetime; empty -> None."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValidationFailed(f"{field} is not a valid ISO-8601 date: {value!r}")
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _iso(dt):
    return dt.isoformat() if dt else None


def get_assignment(assignment_id):
    assignment = db.session.get(Assignment, assignment_id)
    if not assignment:
        raise NotFound(f"Assignment {assignment_id} not found")
    return assignment


def computed_status(assignment, now=None):
    """Manual DRAFT is kept; otherwise COMPLETED after the deadline, else SCHEDULED."""
    if assignment.status == ASSIGNMENT_DRAFT:
        return ASSIGNMENT_DRAFT
    now = now or utc_now()
    if assignment.deadline and assignment.deadline <= now:
        return ASSIGNMENT_COMPLETED
    return ASSIGNMENT_SCHEDULED


def serialize_schedule(schedule):
    return {
        "id": schedule.schedule_id,
        "chapter_id": schedule.chapter_id,
        "chapter_title": schedule.chapter_title,
        "is_open": bool(schedule.is_open),
        "open_date": _iso(schedule.open_date),
        "close_date": _iso(schedule.close_date),
    }


def serialize_assignment(assignment, now=None, paper=None):
    data = {
        "id": assignment.assignment_id,
        "title": assignment.title,
        "subject": assignment.subject,
        "template_id": assignment.template_id_fk,
        "batch_id": assignment.batch_id_fk,
        "activation_date": _iso(assignment.activation_date),
        "deadline": _iso(assignment.deadline),
        "status": computed_status(assignment, now),
        "stored_status": assignment.status,
        "chapter_schedules": [serialize_schedule(s) for s in assignment.schedules],
        "paper_count": len(assignment.papers),
    }
    if paper is not None:
        chapters = paper.chapters
        data["my_paper_id"] = paper.paper_id
        data["progress"] = sum(1 for ch in chapters if ch.get("status") == CHAPTER_APPROVED)
        data["total_chapters"] = len(chapters)
    return data


# ==========================================
# DISTRIBUTION
# ==========================================

def eligible_students(batch_id=None):
    q = select(User).filter(func.lower(func.trim(User.role)) == "student")
    if batch_id is not None:
        q = q.filter(User.batch_id_fk == batch_id)
    return db.session.execute(q.order_by(User.user_id)).scalars().all()


def _insert_paper(assignment, student, chapters, target):
    """
    Insert one paper inside a savepoint. A duplicate (assignment, student)
    rejected by the unique constraint is a benign no-op: returns False.
    """
    try:
        with db.session.begin_nested():
            db.session.add(Paper(
                assignment_id_fk=assignment.assignment_id,
                user_id_fk=student.user_id,
                title=assignment.title,
                subject=assignment.subject,
                structure=copy.deepcopy(chapters),
                word_count=0,
                total_words=target,
            ))
        return True
    except IntegrityError:
        current_app.logger.warning(
            "Paper for assignment %s / student %s already exists; skipping",
            assignment.assignment_id, student.user_id,
        )
        return False


def distribute(assignment):
    """
    Ensure every eligible student has exactly one paper for this assignment.
    Additive only: existing papers are never touched, out-of-scope papers are kept.
    """
    log = current_app.logger
    batch_id = assignment.batch_id_fk
    log.info(
        "Distributing assignment %s (%s) to %s",
        assignment.assignment_id, assignment.title,
        f"batch {batch_id}" if batch_id is not None else "all students",
    )

    students = eligible_students(batch_id)
    existing = set(db.session.execute(
        select(Paper.user_id_fk).filter(Paper.assignment_id_fk == assignment.assignment_id)
    ).scalars().all())
    missing = [s for s in students if s.user_id not in existing]

    pages = assignment.template.pages if assignment.template else []
    chapters, target = resolve_structure(pages)
    if assignment.template and not chapters:
        log.warning("Template %s has no pages with a chapter structure", assignment.template_id_fk)

    result = {"eligible": len(students), "existing": len(existing), "created": 0, "skipped": 0, "failed": []}
    for student in missing:
        try:
            if _insert_paper(assignment, student, chapters, target):
                result["created"] += 1
            else:
                result["skipped"] += 1
        except SQLAlchemyError:
            # One student's failure must not abort the batch; re-running is idempotent
            log.exception("Failed to create paper for student %s", student.user_id)
            result["failed"].append(student.user_id)
    db.session.commit()

    log.info(
        "Distribution of assignment %s done: %s eligible, %s created, %s failed",
        assignment.assignment_id, result["eligible"], result["created"], len(result["failed"]),
    )
    return result


# ==========================================
# ASSIGNMENTS
# ==========================================

def _resolve_template_id(template_id):
    if template_id in (None, ""):
        return None
    if not db.session.get(PaperTemplate, template_id):
        raise ValidationFailed(f"Template {template_id} does not exist")
    return template_id


def _resolve_batch_id(batch_id):
    if batch_id in (None, "", "all", "ALL"):
        return None
    if not db.session.get(Batch, batch_id):
        raise ValidationFailed(f"Batch {batch_id} does not exist")
    return batch_id


def _check_status(status):
    status = (status or ASSIGNMENT_DRAFT).upper()
    if status not in ASSIGNMENT_STATUSES:
        raise ValidationFailed(f"Unknown assignment status: {status}")
    return status


def create_assignment(definition, actor=None):
    missing = [f for f in ("title", "subject", "deadline") if not definition.get(f)]
    if missing:
        raise ValidationFailed("Missing required fields: " + ", ".join(missing))

    deadline = parse_datetime(definition.get("deadline"), "deadline")
    activation = parse_datetime(definition.get("activation_date"), "activation_date") or utc_now()
    if activation > deadline:
        raise ValidationFailed("activation_date must not be after deadline")

    schedules = _parse_schedules(definition.get("chapter_schedules") or [])
    assignment = Assignment(
        title=definition["title"].strip(),
        subject=definition["subject"].strip(),
        deadline=deadline,
        activation_date=activation,
        template_id_fk=_resolve_template_id(definition.get("template_id")),
        batch_id_fk=_resolve_batch_id(definition.get("batch_id")),
        status=_check_status(definition.get("status")),
        created_by=getattr(actor, "user_id", None),
    )
    db.session.add(assignment)
    db.session.flush()
    _apply_schedules(assignment, schedules)
    db.session.commit()
    current_app.logger.info("Assignment %s created", assignment.assignment_id)

    distribute(assignment)
    return assignment


def update_assignment(assignment_id, patch):
    assignment = get_assignment(assignment_id)

    # Validate the whole patch before touching the row
    changes = {}
    if patch.get("title"):
        changes["title"] = patch["title"].strip()
    if patch.get("subject"):
        changes["subject"] = patch["subject"].strip()
    if patch.get("deadline"):
        changes["deadline"] = parse_datetime(patch["deadline"], "deadline")
    if patch.get("activation_date"):
        changes["activation_date"] = parse_datetime(patch["activation_date"], "activation_date")
    if patch.get("status"):
        changes["status"] = _check_status(patch["status"])
    if "template_id" in patch:
        changes["template_id_fk"] = _resolve_template_id(patch["template_id"])
    if "batch_id" in patch:
        changes["batch_id_fk"] = _resolve_batch_id(patch["batch_id"])
    activation = changes.get("activation_date", assignment.activation_date)
    deadline = changes.get("deadline", assignment.deadline)
    if activation and deadline and activation > deadline:
        raise ValidationFailed("activation_date must not be after deadline")
    schedules = patch.get("chapter_schedules")
    parsed = _parse_schedules(schedules) if isinstance(schedules, list) and schedules else None

    for field, value in changes.items():
        setattr(assignment, field, value)
    if isinstance(schedules, list):
        if parsed is None:
            _replace_or_upsert_schedules(assignment, [])
        else:
            try:
                _apply_schedules(assignment, parsed)
            except NotFound:
                db.session.rollback()
                raise
    db.session.commit()
    current_app.logger.info("Assignment %s updated", assignment.assignment_id)

    # Audience or template may have changed
    distribute(assignment)
    return assignment


def delete_assignment(assignment_id):
    assignment = get_assignment(assignment_id)
    paper_count = len(assignment.papers)
    db.session.delete(assignment)
    db.session.commit()
    current_app.logger.info("Assignment %s deleted with %s papers", assignment_id, paper_count)


def list_assignments(actor, status=None, now=None):
    now = now or utc_now()
    assignments = db.session.execute(
        select(Assignment).order_by(Assignment.created_at.desc(), Assignment.assignment_id.desc())
    ).scalars().all()

    is_student = getattr(actor, "normalized_role", "") == "student"
    papers_by_assignment = {}
    if is_student:
        papers = db.session.execute(select(Paper).filter_by(user_id_fk=actor.user_id)).scalars().all()
        papers_by_assignment = {p.assignment_id_fk: p for p in papers}

    rows = []
    for a in assignments:
        if is_student and a.assignment_id not in papers_by_assignment:
            continue
        if status and computed_status(a, now) != status.upper():
            continue
        rows.append(serialize_assignment(a, now, papers_by_assignment.get(a.assignment_id)))
    return rows


# ==========================================
# CHAPTER SCHEDULES
# ==========================================

def _parse_schedules(entries):
    """Validate every entry before anything is written."""
    if not isinstance(entries, list):
        raise ValidationFailed("chapter_schedules must be an array")
    parsed = []
    for n, entry in enumerate(entries, start=1):
        if not isinstance(entry, dict):
            raise ValidationFailed(f"Schedule #{n} must be an object")
        schedule_id = entry.get("id")
        title = (entry.get("chapter_title") or "").strip()
        if schedule_id is None and not title:
            raise ValidationFailed(f"Schedule #{n} needs either an id or a chapter_title")
        open_date = parse_datetime(entry.get("open_date"), "open_date")
        close_date = parse_datetime(entry.get("close_date"), "close_date")
        if open_date and close_date and open_date > close_date:
            raise ValidationFailed(f"Schedule #{n}: open_date must not be after close_date")
        is_open = entry.get("is_open", True)
        if not isinstance(is_open, bool):
            raise ValidationFailed(f"Schedule #{n}: is_open must be true or false")
        chapter_id = entry.get("chapter_id")
        parsed.append({
            "id": schedule_id,
            "chapter_id": str(chapter_id) if chapter_id not in (None, "") else None,
            "chapter_title": title,
            "is_open": is_open,
            "open_date": open_date,
            "close_date": close_date,
        })
    return parsed


def _schedule_for_entry(assignment, entry):
    """
    Row an id-less schedule entry updates. An entry carrying a chapter_id only
    claims the row with that id, or a legacy row with no id and the same title;
    chapters that share a title never take over each other's row.
    """
    title = normalize_title(entry["chapter_title"])
    if entry["chapter_id"]:
        for s in assignment.schedules:
            if s.chapter_id not in (None, "") and str(s.chapter_id) == entry["chapter_id"]:
                return s
        candidates = [s for s in assignment.schedules if s.chapter_id in (None, "")]
    else:
        candidates = list(assignment.schedules)
    for s in candidates:
        if title and normalize_title(s.chapter_title) == title:
            return s
    return None


def _apply_schedules(assignment, parsed):
    results = []
    for entry in parsed:
        if entry["id"] is not None:
            schedule = db.session.get(ChapterSchedule, entry["id"])
            if not schedule or schedule.assignment_id_fk != assignment.assignment_id:
                raise NotFound(f"Chapter schedule {entry['id']} not found for this assignment")
        else:
            # Upsert on the chapter key so repeated saves never duplicate rows
            schedule = _schedule_for_entry(assignment, entry)
            if schedule is None:
                schedule = ChapterSchedule(
                    assignment_id_fk=assignment.assignment_id,
                    chapter_id=entry["chapter_id"],
                    chapter_title=entry["chapter_title"],
                )
                db.session.add(schedule)
                assignment.schedules.append(schedule)
        if entry["chapter_title"]:
            schedule.chapter_title = entry["chapter_title"]
        if entry["chapter_id"]:
            schedule.chapter_id = entry["chapter_id"]
        schedule.is_open = entry["is_open"]
        schedule.open_date = entry["open_date"]
        schedule.close_date = entry["close_date"]
        results.append(schedule)
    return results


def _replace_or_upsert_schedules(assignment, entries):
    if not entries:
        # Empty list is an explicit "remove every schedule" signal
        removed = len(assignment.schedules)
        assignment.schedules.clear()
        current_app.logger.info("Cleared %s chapter schedules of assignment %s", removed, assignment.assignment_id)
        return []
    try:
        return _apply_schedules(assignment, _parse_schedules(entries))
    except (ValidationFailed, NotFound):
        db.session.rollback()
        raise


def update_chapter_schedules(assignment_id, entries):
    assignment = get_assignment(assignment_id)
    if not isinstance(entries, list):
        raise ValidationFailed("chapter_schedules must be an array")
    schedules = _replace_or_upsert_schedules(assignment, entries)
    db.session.commit()
    return schedules


def set_all_schedules_open(assignment_id, is_open):
    assignment = get_assignment(assignment_id)
    for schedule in assignment.schedules:
        schedule.is_open = bool(is_open)
    db.session.commit()
    current_app.logger.info(
        "All chapter schedules of assignment %s %s", assignment_id, "opened" if is_open else "closed",
    )
    return assignment.schedules


def list_chapter_schedules(assignment_id, now=None):
    """Template chapters paired with their schedule and current time gate."""
    assignment = get_assignment(assignment_id)
    now = now or utc_now()
    pages = assignment.template.pages if assignment.template else []
    fallback = assignment_window(assignment)
    rows = []
    for chapter in template_chapters(pages):
        match = match_schedule(chapter, assignment.schedules)
        if match.kind == "ambiguous":
            current_app.logger.warning(
                "Chapter %r of assignment %s matches %s schedules",
                chapter["title"], assignment_id, len(match.candidates),
            )
        rows.append({
            "chapter_id": chapter["id"],
            "chapter_title": chapter["title"],
            "min_words": chapter["min_words"],
            "match": match.kind,
            "schedule": serialize_schedule(match.schedule) if match.schedule else None,
            "window_status": resolve_window(match.schedule, fallback, now),
        })
    return rows


# ==========================================
# TEMPLATES & BATCHES
# ==========================================

def create_template(name, pages):
    if not (name or "").strip():
        raise ValidationFailed("Template name is required")
    if not isinstance(pages, list):
        raise ValidationFailed("pages must be an array")
    template = PaperTemplate(name=name.strip(), pages=load_pages(pages))
    db.session.add(template)
    db.session.commit()
    return template


def create_batch(name, year=None):
    if not (name or "").strip():
        raise ValidationFailed("Batch name is required")
    batch = Batch(name=name.strip(), year=year)
    db.session.add(batch)
    db.session.commit()
    return batch
