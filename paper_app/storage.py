import os
import secrets
from datetime import datetime

from flask import current_app
from werkzeug.utils import secure_filename

from .errors import NotFound, ValidationFailed

ALLOWED_FINAL_EXTS = {"pdf", "docx", "txt"}
FINAL_SUBDIR = "final"


def _final_upload_dir():
    base_dir = os.path.join(current_app.config["UPLOAD_FOLDER"], FINAL_SUBDIR)
    os.makedirs(base_dir, exist_ok=True)
    return base_dir


def final_extension(filename):
    filename = secure_filename(filename or "")
    return filename.rsplit(".", 1)[-1].lower() if "." in filename else ""


def save_final_document(file_storage, paper_id: int) -> dict:
    """Store an uploaded final document; returns its pointer fields."""
    if not file_storage or not (file_storage.filename or "").strip():
        raise ValidationFailed("No file uploaded")
    original_name = file_storage.filename
    ext = final_extension(original_name)
    if ext not in ALLOWED_FINAL_EXTS:
        raise ValidationFailed("Invalid file type for final document. Allowed: pdf, docx, txt")
    ts = datetime.now().strftime("%Y%m%d%H%M%S")
    final_name = f"paper_{paper_id}_{ts}_{secrets.token_hex(4)}.{ext}"
    target_path = os.path.join(_final_upload_dir(), final_name)
    file_storage.save(target_path)
    return {
        "url": "/".join(["/uploads", FINAL_SUBDIR, final_name]),
        "name": original_name,
        "size": os.path.getsize(target_path),
    }


def _path_for(url):
    name = os.path.basename(url or "")
    if not name:
        raise NotFound("Final document not found")
    return os.path.join(_final_upload_dir(), name)


def read_document(url) -> bytes:
    path = _path_for(url)
    if not os.path.exists(path):
        raise NotFound("Final document file is missing from storage")
    with open(path, "rb") as fh:
        return fh.read()


def delete_document(url):
    if not url:
        return
    path = _path_for(url)
    try:
        os.remove(path)
    except FileNotFoundError:
        current_app.logger.warning("Final document %s already removed", url)
