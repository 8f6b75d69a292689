from flask_login import login_required, current_user

from . import integrity_bp
from .. import csrf_required
from ..api_utils import api_success, json_body
from ..decorators import role_required
from .services import integrity_summary, recheck_integrity, verification_queue, verify_integrity

VERIFIERS = ("verifier", "admin", "super_admin")


@integrity_bp.route("/queue", methods=["GET"])
@login_required
@role_required(*VERIFIERS)
def queue():
    items = verification_queue()
    return api_success({"items": items}, {"flagged": sum(1 for i in items if i["integrity"]["flagged"])})


@integrity_bp.route("/<int:paper_id>/recheck", methods=["POST"])
@login_required
@role_required(*VERIFIERS)
@csrf_required
def recheck(paper_id):
    paper = recheck_integrity(paper_id)
    return api_success({"paper_id": paper.paper_id, "integrity": integrity_summary(paper)})


@integrity_bp.route("/<int:paper_id>/decision", methods=["POST"])
@login_required
@role_required(*VERIFIERS)
@csrf_required
def decision(paper_id):
    payload = json_body()
    paper = verify_integrity(paper_id, payload.get("decision"), current_user, payload.get("note"))
    return api_success({"paper_id": paper.paper_id, "integrity": integrity_summary(paper)})
