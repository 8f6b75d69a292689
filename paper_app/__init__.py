import os
import secrets
import time
from flask import Flask, session, request, current_app
from flask_login import LoginManager
from flask_sqlalchemy import SQLAlchemy
from werkzeug.exceptions import HTTPException
from functools import wraps
from flask_migrate import Migrate
from datetime import timedelta
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_caching import Cache
from flask_limiter.errors import RateLimitExceeded
from sqlalchemy.exc import SQLAlchemyError

# Global extensions
db = SQLAlchemy()
login_manager = LoginManager()
migrate = Migrate()
def _rate_key():
    try:
        ip = (request.headers.get("X-Forwarded-For") or get_remote_address() or "local")
        if not session.get("rlid"):
            session["rlid"] = secrets.token_urlsafe(16)
        token = session["rlid"]
        path = (getattr(request, "path", "/") or "/")
        return f"{ip}|{token}|{path}"
    except Exception:
        return "local"

limiter = Limiter(key_func=_rate_key)
cache = Cache()


def _env_flag(name, default):
    return (os.environ.get(name, default).lower() == "true")


def create_app():
    app = Flask(__name__)
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key")
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)

    REDIS_URL = os.environ.get("REDIS_URL")
    if REDIS_URL:
        app.config["CACHE_TYPE"] = "RedisCache"
        app.config["CACHE_REDIS_URL"] = REDIS_URL
        app.config["RATELIMIT_STORAGE_URI"] = REDIS_URL
    else:
        app.config["CACHE_TYPE"] = "SimpleCache"

    # Global upload cap (can be overridden via env)
    app.config["MAX_CONTENT_LENGTH"] = int(os.environ.get("MAX_CONTENT_LENGTH", str(32 * 1024 * 1024)))
    # CSRF token TTL (seconds)
    app.config["CSRF_TOKEN_TTL"] = int(os.environ.get("CSRF_TOKEN_TTL", "7200"))
    app.config["CSRF_ENABLED"] = _env_flag("CSRF_ENABLED", "true")

    upload_dir = os.environ.get("UPLOAD_FOLDER")
    if not upload_dir:
        upload_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "uploads"))
    app.config["UPLOAD_FOLDER"] = upload_dir

    # Workflow defaults; values stored in system_config win over these
    app.config["VIOLATION_THRESHOLD"] = int(os.environ.get("VIOLATION_THRESHOLD", "3"))
    app.config["INTEGRITY_TOLERANCE"] = int(os.environ.get("INTEGRITY_TOLERANCE", "10"))
    app.config["PASSING_GRADE"] = int(os.environ.get("PASSING_GRADE", "60"))

    # Database configuration: use DATABASE_URL if provided, else sqlite file
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        db_path = os.path.join(os.path.dirname(__file__), "..", "paper.db")
        database_url = f"sqlite:///{os.path.abspath(db_path)}"

    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    app.config.setdefault("RATELIMIT_STORAGE_URI", "memory://")
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cache.init_app(app)
    login_manager.init_app(app)

    # Import models so they are registered with SQLAlchemy
    from . import models  # noqa: F401

    @login_manager.user_loader
    def load_user(user_id: str):
        try:
            from .models import User
            return db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None

    @login_manager.unauthorized_handler
    def unauthorized():
        from .api_utils import api_error
        return api_error("unauthorized", "Login required", 401)

    # Blueprints
    from .main import main_bp
    app.register_blueprint(main_bp)

    from .assignments import assignments_bp
    app.register_blueprint(assignments_bp, url_prefix="/assignments")

    from .papers import papers_bp
    app.register_blueprint(papers_bp, url_prefix="/papers")

    from .integrity import integrity_bp
    app.register_blueprint(integrity_bp, url_prefix="/integrity")

    from .violations import violations_bp
    app.register_blueprint(violations_bp, url_prefix="/violations")

    from .errors import WorkflowError

    @app.errorhandler(WorkflowError)
    def handle_workflow_error(e):
        from .api_utils import api_error
        return api_error(e.code, e.message, e.status)

    @app.errorhandler(SQLAlchemyError)
    def handle_storage_error(e):
        from .api_utils import api_error
        db.session.rollback()
        current_app.logger.exception("Storage failure")
        return api_error("storage_unavailable", "Storage is temporarily unavailable, please retry", 503)

    @app.errorhandler(RateLimitExceeded)
    def handle_rate_limit(e):
        from .api_utils import api_error
        return api_error("rate_limited", "Too many requests", 429)

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        from .api_utils import api_error
        return api_error(str(e.code), e.description or "", e.code)

    # Create tables on first run (dev convenience)
    with app.app_context():
        db.create_all()

    return app


def csrf_required(view_func):
    @wraps(view_func)
    def _wrapped(*args, **kwargs):
        if not current_app.config.get("CSRF_ENABLED", True):
            return view_func(*args, **kwargs)
        method = (request.method or "GET").upper()
        if method in ("POST", "PUT", "PATCH", "DELETE"):
            from .api_utils import api_error
            token = (request.headers.get("X-CSRF-Token") or request.form.get("csrf_token") or "").strip()
            sess_token = (session.get("csrf_token") or "")
            issued_at = session.get("csrf_token_issued_at")
            ttl = current_app.config.get("CSRF_TOKEN_TTL", 7200)
            now = int(time.time())
            # Expired token
            if not issued_at or (ttl > 0 and (now - int(issued_at)) > ttl):
                return api_error("csrf_expired", "Refresh the page or login again", 403)
            # Missing or mismatched token
            if not token or token != sess_token:
                return api_error("csrf_invalid", "Refresh the page or login again", 403)
        return view_func(*args, **kwargs)
    return _wrapped


def issue_csrf_token():
    token = session.get("csrf_token")
    issued_at = session.get("csrf_token_issued_at")
    ttl = current_app.config.get("CSRF_TOKEN_TTL", 7200)
    # Regenerate token if missing or expired
    now = int(time.time())
    if (not token) or (not issued_at) or (ttl > 0 and (now - int(issued_at)) > ttl):
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
        session["csrf_token_issued_at"] = now
    return token
