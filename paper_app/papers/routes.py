from flask import request
from flask_login import login_required, current_user

from . import papers_bp
from .. import csrf_required
from ..api_utils import api_success, json_body
from ..decorators import role_required, bypass_gates_for
from .services import (
    decide_chapter, decide_final_document, delete_final_document, get_paper, grade_paper,
    list_papers, save_chapter_draft, serialize_paper, submit_chapter, unapprove_chapter,
    upload_final_document, withdraw_submission,
)

ADVISORS = ("advisor", "admin", "super_admin")


def _paper_response(paper, status=200):
    return api_success({"paper": serialize_paper(paper)}, status=status)


@papers_bp.route("/", methods=["GET"])
@login_required
def paper_list():
    assignment_id = request.args.get("assignment_id", type=int)
    user_id = request.args.get("user_id", type=int)
    papers = list_papers(current_user, assignment_id, user_id)
    items = [serialize_paper(p, include_content=False) for p in papers]
    return api_success({"items": items}, {"assignment_id": assignment_id, "user_id": user_id, "total": len(items)})


@papers_bp.route("/<int:paper_id>", methods=["GET"])
@login_required
def paper_detail(paper_id):
    return _paper_response(get_paper(paper_id, current_user))


# --- Student chapter actions ---

@papers_bp.route("/<int:paper_id>/chapters/<int:index>", methods=["PUT"])
@login_required
@role_required("student", "helper")
@csrf_required
def chapter_save(paper_id, index):
    content = json_body().get("content")
    paper = save_chapter_draft(paper_id, index, content, current_user, bypass_gates=bypass_gates_for(current_user))
    return _paper_response(paper)


@papers_bp.route("/<int:paper_id>/chapters/<int:index>/submit", methods=["POST"])
@login_required
@role_required("student", "helper")
@csrf_required
def chapter_submit(paper_id, index):
    paper = submit_chapter(paper_id, index, current_user, bypass_gates=bypass_gates_for(current_user))
    return _paper_response(paper)


@papers_bp.route("/<int:paper_id>/chapters/<int:index>/withdraw", methods=["POST"])
@login_required
@role_required("student", "helper")
@csrf_required
def chapter_withdraw(paper_id, index):
    paper = withdraw_submission(paper_id, index, current_user, bypass_gates=bypass_gates_for(current_user))
    return _paper_response(paper)


# --- Advisor chapter actions ---

@papers_bp.route("/<int:paper_id>/chapters/<int:index>/decision", methods=["POST"])
@login_required
@role_required(*ADVISORS)
@csrf_required
def chapter_decision(paper_id, index):
    payload = json_body()
    paper = decide_chapter(paper_id, index, payload.get("decision"), payload.get("feedback"), current_user)
    return _paper_response(paper)


@papers_bp.route("/<int:paper_id>/chapters/<int:index>/unapprove", methods=["POST"])
@login_required
@role_required(*ADVISORS)
@csrf_required
def chapter_unapprove(paper_id, index):
    paper = unapprove_chapter(paper_id, index, current_user, json_body().get("reason"))
    return _paper_response(paper)


# --- Final document ---

@papers_bp.route("/<int:paper_id>/final", methods=["POST"])
@login_required
@role_required("student", "helper")
@csrf_required
def final_upload(paper_id):
    paper = upload_final_document(
        paper_id, request.files.get("file"), current_user, bypass_gates=bypass_gates_for(current_user),
    )
    return _paper_response(paper, status=201)


@papers_bp.route("/<int:paper_id>/final", methods=["DELETE"])
@login_required
@role_required("student", "helper")
@csrf_required
def final_delete(paper_id):
    paper = delete_final_document(paper_id, current_user, bypass_gates=bypass_gates_for(current_user))
    return _paper_response(paper)


@papers_bp.route("/<int:paper_id>/final/decision", methods=["POST"])
@login_required
@role_required(*ADVISORS)
@csrf_required
def final_decision(paper_id):
    payload = json_body()
    paper = decide_final_document(paper_id, payload.get("decision"), payload.get("feedback"), current_user)
    return _paper_response(paper)


# --- Grading ---

@papers_bp.route("/<int:paper_id>/grade", methods=["POST"])
@login_required
@role_required("examiner", "admin", "super_admin", "helper")
@csrf_required
def paper_grade(paper_id):
    payload = json_body()
    paper = grade_paper(
        paper_id, payload.get("grade"), payload.get("feedback"), current_user,
        bypass_gates=bypass_gates_for(current_user),
    )
    return _paper_response(paper)
