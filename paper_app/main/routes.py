from flask import request, session
from flask_login import login_user, logout_user, login_required, current_user
from sqlalchemy import select, text
from werkzeug.security import check_password_hash

from . import main_bp
from .. import db, csrf_required, limiter, issue_csrf_token
from ..api_utils import api_success, api_error, json_body
from ..decorators import role_required, bypass_gates_for
from ..models import User
from ..settings import WORKFLOW_SETTINGS, get_settings, update_settings
from ..violations.services import lock_state


def serialize_user(user):
    data = {
        "id": user.user_id,
        "username": user.username,
        "full_name": user.full_name,
        "role": user.normalized_role,
        "batch_id": user.batch_id_fk,
        "advisor_id": user.advisor_id_fk,
        "bypass_gates": bypass_gates_for(user),
    }
    if user.normalized_role == "student":
        data["editor"] = lock_state(user.user_id)
    return data


@main_bp.route("/health", methods=["GET"])
def health():
    db.session.execute(text("SELECT 1"))
    return api_success({"status": "ok"})


@main_bp.route("/csrf-token", methods=["GET"])
def csrf_token():
    return api_success({"csrf_token": issue_csrf_token()})


@main_bp.route("/login", methods=["POST"])
@limiter.limit("5 per minute", methods=["POST"])
def login():
    payload = json_body() or request.form
    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""
    if not username or not password:
        return api_error("validation_failed", "Username and password are required.", 400)
    user = db.session.execute(select(User).filter_by(username=username)).scalars().first()
    if not user or not user.password_hash or not check_password_hash(user.password_hash, password):
        return api_error("invalid_credentials", "Invalid credentials.", 401)
    if not user.is_active:
        return api_error("inactive", "Account is disabled.", 403)
    login_user(user)
    session.permanent = True
    return api_success({"user": serialize_user(user), "csrf_token": issue_csrf_token()})


@main_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    session.clear()
    return api_success({"logged_out": True})


@main_bp.route("/me", methods=["GET"])
@login_required
def me():
    return api_success({"user": serialize_user(current_user)})


@main_bp.route("/settings", methods=["GET"])
@login_required
def settings_view():
    descriptions = {key: desc for key, (_, desc, _) in WORKFLOW_SETTINGS.items()}
    return api_success({"settings": get_settings()}, {"descriptions": descriptions})


@main_bp.route("/settings", methods=["PUT"])
@login_required
@role_required("admin", "super_admin")
@csrf_required
def settings_update():
    return api_success({"settings": update_settings(json_body())})
