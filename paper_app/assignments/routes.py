from flask import request
from flask_login import login_required, current_user

from . import assignments_bp
from .. import csrf_required
from ..api_utils import api_success, json_body
from ..decorators import role_required
from ..errors import ValidationFailed
from .services import (
    create_assignment, create_batch, create_template, delete_assignment, distribute,
    get_assignment, list_assignments, list_chapter_schedules, serialize_assignment,
    serialize_schedule, set_all_schedules_open, update_assignment, update_chapter_schedules,
)

MANAGERS = ("admin", "super_admin")


@assignments_bp.route("/", methods=["GET"])
@login_required
def assignment_list():
    status = (request.args.get("status") or "").strip() or None
    items = list_assignments(current_user, status)
    return api_success({"items": items}, {"status": status, "total": len(items)})


@assignments_bp.route("/", methods=["POST"])
@login_required
@role_required(*MANAGERS)
@csrf_required
def assignment_create():
    assignment = create_assignment(json_body(), current_user)
    return api_success({"assignment": serialize_assignment(assignment)}, status=201)


@assignments_bp.route("/<int:assignment_id>", methods=["GET"])
@login_required
@role_required(*MANAGERS, "advisor", "verifier", "examiner", "helper")
def assignment_detail(assignment_id):
    return api_success({"assignment": serialize_assignment(get_assignment(assignment_id))})


@assignments_bp.route("/<int:assignment_id>", methods=["PUT"])
@login_required
@role_required(*MANAGERS)
@csrf_required
def assignment_update(assignment_id):
    assignment = update_assignment(assignment_id, json_body())
    return api_success({"assignment": serialize_assignment(assignment)})


@assignments_bp.route("/<int:assignment_id>", methods=["DELETE"])
@login_required
@role_required(*MANAGERS)
@csrf_required
def assignment_delete(assignment_id):
    delete_assignment(assignment_id)
    return api_success({"deleted": assignment_id})


@assignments_bp.route("/<int:assignment_id>/distribute", methods=["POST"])
@login_required
@role_required(*MANAGERS)
@csrf_required
def assignment_distribute(assignment_id):
    return api_success({"distribution": distribute(get_assignment(assignment_id))})


@assignments_bp.route("/<int:assignment_id>/chapters", methods=["GET"])
@login_required
@role_required(*MANAGERS, "advisor", "helper")
def chapter_schedule_list(assignment_id):
    return api_success({"items": list_chapter_schedules(assignment_id)})


@assignments_bp.route("/<int:assignment_id>/chapters", methods=["PUT"])
@login_required
@role_required(*MANAGERS)
@csrf_required
def chapter_schedule_update(assignment_id):
    payload = json_body()
    entries = payload.get("chapter_schedules", payload.get("items"))
    if entries is None:
        raise ValidationFailed("chapter_schedules is required")
    schedules = update_chapter_schedules(assignment_id, entries)
    return api_success({"items": [serialize_schedule(s) for s in schedules]})


@assignments_bp.route("/<int:assignment_id>/chapters/bulk", methods=["PUT"])
@login_required
@role_required(*MANAGERS)
@csrf_required
def chapter_schedule_bulk(assignment_id):
    payload = json_body()
    if not isinstance(payload.get("is_open"), bool):
        raise ValidationFailed("is_open must be true or false")
    schedules = set_all_schedules_open(assignment_id, payload["is_open"])
    return api_success({"items": [serialize_schedule(s) for s in schedules]})


@assignments_bp.route("/templates", methods=["POST"])
@login_required
@role_required(*MANAGERS)
@csrf_required
def template_create():
    payload = json_body()
    template = create_template(payload.get("name"), payload.get("pages"))
    return api_success({"template": {"id": template.template_id, "name": template.name}}, status=201)


@assignments_bp.route("/batches", methods=["POST"])
@login_required
@role_required(*MANAGERS)
@csrf_required
def batch_create():
    payload = json_body()
    batch = create_batch(payload.get("name"), payload.get("year"))
    return api_success({"batch": {"id": batch.batch_id, "name": batch.name, "year": batch.year}}, status=201)
