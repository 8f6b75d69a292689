from flask import current_app
from sqlalchemy import func, or_, select, update

from .. import db
from ..errors import NotFound, ValidationFailed
from ..models import User, Violation, utc_now
from ..settings import get_setting


def _get_student(student_id):
    student = db.session.get(User, student_id)
    if not student or student.normalized_role != "student":
        raise NotFound(f"Student {student_id} not found")
    return student


def serialize_violation(v):
    return {
        "id": v.violation_id,
        "student_id": v.user_id_fk,
        "type": v.violation_type,
        "description": v.description,
        "resolved": bool(v.resolved),
        "created_at": v.created_at.isoformat() if v.created_at else None,
        "resolved_at": v.resolved_at.isoformat() if v.resolved_at else None,
    }


def record_violation(student_id, violation_type, description=None):
    """Append one detected integrity event; detection itself happens client-side."""
    student = _get_student(student_id)
    violation_type = (violation_type or "").strip()
    if not violation_type:
        raise ValidationFailed("Violation type is required")
    v = Violation(
        user_id_fk=student.user_id,
        violation_type=violation_type[:64],
        description=(description or "").strip() or None,
    )
    db.session.add(v)
    db.session.commit()
    current_app.logger.info("Violation %s recorded for student %s", violation_type, student.user_id)
    return v


def count_unresolved(student_id):
    return db.session.execute(
        select(func.count(Violation.violation_id)).filter(
            Violation.user_id_fk == student_id, Violation.resolved.is_(False)
        )
    ).scalar_one()


def is_locked(student_id, threshold=None):
    """Lock predicate for the editing surface. A threshold of 0 disables locking."""
    if threshold is None:
        threshold = get_setting("violation_threshold")
    return threshold > 0 and count_unresolved(student_id) >= threshold


def lock_state(student_id):
    threshold = get_setting("violation_threshold")
    active = count_unresolved(student_id)
    return {
        "active_violations": active,
        "threshold": threshold,
        "locked": threshold > 0 and active >= threshold,
    }


def reset_violations(student_id):
    """
    Soft reset: marks every unresolved violation resolved and bumps the
    student's audit-only reset counter in one transaction. Rows are never deleted.
    """
    student = _get_student(student_id)
    now = utc_now()
    result = db.session.execute(
        update(Violation)
        .where(Violation.user_id_fk == student.user_id, Violation.resolved.is_(False))
        .values(resolved=True, resolved_at=now)
        .execution_options(synchronize_session=False)
    )
    db.session.execute(
        update(User)
        .where(User.user_id == student.user_id)
        .values(reset_count=User.reset_count + 1)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    db.session.refresh(student)
    current_app.logger.info(
        "Violations of student %s reset (%s resolved, reset #%s)",
        student.user_id, result.rowcount, student.reset_count,
    )
    return {"affected": result.rowcount, "reset_count": student.reset_count}


def list_violations(student_id):
    _get_student(student_id)
    return db.session.execute(
        select(Violation)
        .filter(Violation.user_id_fk == student_id)
        .order_by(Violation.created_at.desc(), Violation.violation_id.desc())
    ).scalars().all()


def violation_summary():
    """Students with active violations or at least one past reset."""
    threshold = get_setting("violation_threshold")
    active = (
        select(Violation.user_id_fk, func.count(Violation.violation_id).label("active"))
        .filter(Violation.resolved.is_(False))
        .group_by(Violation.user_id_fk)
        .subquery()
    )
    rows = db.session.execute(
        select(User, func.coalesce(active.c.active, 0))
        .outerjoin(active, active.c.user_id_fk == User.user_id)
        .filter(func.lower(func.trim(User.role)) == "student")
        .filter(or_(User.reset_count > 0, active.c.active > 0))
        .order_by(func.coalesce(active.c.active, 0).desc(), User.reset_count.desc())
    ).all()
    return [
        {
            "id": user.user_id,
            "name": user.full_name or user.username,
            "active_violations": count,
            "reset_count": user.reset_count,
            "locked": threshold > 0 and count >= threshold,
        }
        for user, count in rows
    ]
