from flask import Blueprint

violations_bp = Blueprint("violations", __name__)

from . import routes  # noqa: E402,F401
