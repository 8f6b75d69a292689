from flask_login import login_required, current_user

from . import violations_bp
from .. import csrf_required, limiter
from ..api_utils import api_success, json_body
from ..decorators import role_required
from .services import (
    list_violations, lock_state, record_violation, reset_violations, serialize_violation, violation_summary,
)

REVIEWERS = ("admin", "super_admin", "verifier", "advisor")


@violations_bp.route("/", methods=["POST"])
@login_required
@role_required("student")
@csrf_required
@limiter.limit("30 per minute")
def violation_record():
    # Students can only report against themselves
    payload = json_body()
    v = record_violation(current_user.user_id, payload.get("type"), payload.get("description"))
    return api_success({"violation": serialize_violation(v), "editor": lock_state(current_user.user_id)}, status=201)


@violations_bp.route("/me", methods=["GET"])
@login_required
@role_required("student")
def violation_me():
    return api_success(lock_state(current_user.user_id))


@violations_bp.route("/summary", methods=["GET"])
@login_required
@role_required(*REVIEWERS)
def violation_summary_view():
    return api_success({"items": violation_summary()})


@violations_bp.route("/<int:student_id>", methods=["GET"])
@login_required
@role_required(*REVIEWERS)
def violation_history(student_id):
    items = [serialize_violation(v) for v in list_violations(student_id)]
    return api_success({"items": items}, lock_state(student_id))


@violations_bp.route("/<int:student_id>/reset", methods=["POST"])
@login_required
@role_required("admin", "super_admin")
@csrf_required
def violation_reset(student_id):
    return api_success(reset_violations(student_id))
