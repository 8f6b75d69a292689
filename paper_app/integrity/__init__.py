from flask import Blueprint

integrity_bp = Blueprint("integrity", __name__)

from . import routes  # noqa: E402,F401
