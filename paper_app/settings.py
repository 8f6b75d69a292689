from flask import current_app
from . import db, cache
from .errors import ValidationFailed
from .models import SystemConfig

# key -> (app.config fallback key, description, max allowed)
WORKFLOW_SETTINGS = {
    "violation_threshold": ("VIOLATION_THRESHOLD", "Unresolved violations that lock a student's editor (0 disables)", None),
    "integrity_tolerance": ("INTEGRITY_TOLERANCE", "Accepted shortfall (percent) below a 100% consistency score", 100),
    "passing_grade": ("PASSING_GRADE", "Minimum examiner grade to pass", 100),
}

_CACHE_KEY = "workflow_settings"


def get_settings():
    """Effective workflow settings: stored values override the environment defaults."""
    cached = cache.get(_CACHE_KEY)
    if cached is not None:
        return dict(cached)

    values = {key: int(current_app.config.get(cfg_key, 0)) for key, (cfg_key, _, _) in WORKFLOW_SETTINGS.items()}
    rows = db.session.execute(
        db.select(SystemConfig).filter(SystemConfig.config_key.in_(list(WORKFLOW_SETTINGS)))
    ).scalars().all()
    for row in rows:
        try:
            values[row.config_key] = int(row.config_value)
        except (TypeError, ValueError):
            current_app.logger.warning("Ignoring malformed setting %s=%r", row.config_key, row.config_value)

    cache.set(_CACHE_KEY, values, timeout=300)
    return dict(values)


def get_setting(key):
    return get_settings()[key]


def update_settings(patch):
    cleaned = {}
    for key, raw in (patch or {}).items():
        if key not in WORKFLOW_SETTINGS:
            raise ValidationFailed(f"Unknown setting: {key}")
        try:
            value = int(raw)
        except (TypeError, ValueError):
            raise ValidationFailed(f"{key} must be an integer")
        max_allowed = WORKFLOW_SETTINGS[key][2]
        if value < 0 or (max_allowed is not None and value > max_allowed):
            bound = f"0-{max_allowed}" if max_allowed is not None else ">= 0"
            raise ValidationFailed(f"{key} must be in range {bound}")
        cleaned[key] = value

    for key, value in cleaned.items():
        row = db.session.get(SystemConfig, key)
        if not row:
            row = SystemConfig(config_key=key, description=WORKFLOW_SETTINGS[key][1])
            db.session.add(row)
        row.config_value = str(value)
    db.session.commit()
    cache.delete(_CACHE_KEY)
    current_app.logger.info("Workflow settings updated: %s", cleaned)
    return get_settings()
