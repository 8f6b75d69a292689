"""
Integrity Verifier.

Compares what the student wrote in the editor (all chapter contents) with
the text of the uploaded final document. The score is a strict
containment score: the share of the editor's long sentences that appear
verbatim in the document. A human verifier always makes the final
VERIFIED / REJECTED call; a low score only flags the paper.
"""
import re

from flask import current_app
from sqlalchemy import select

from .. import db
from ..errors import GateViolation, NotFound, ValidationFailed
from ..models import (
    CONSISTENCY_ERROR, CONSISTENCY_PENDING, CONSISTENCY_REJECTED, CONSISTENCY_VERIFIED,
    FINAL_APPROVED, Paper, utc_now,
)
from ..settings import get_setting
from ..storage import read_document
from ..text_utils import strip_html
from .extract import ExtractionError, extract_text

MIN_SENTENCE_WORDS = 20
VERIFICATION_DECISIONS = (CONSISTENCY_VERIFIED, CONSISTENCY_REJECTED)

_SYMBOLS_RE = re.compile(r"[^a-z0-9\s]")
_NUMBERS_RE = re.compile(r"\b\d+\b")
_SPACES_RE = re.compile(r"\s+")


def aggressive_normalize(text):
    text = (text or "").lower()
    text = _SYMBOLS_RE.sub(" ", text)
    text = _NUMBERS_RE.sub(" ", text)
    return _SPACES_RE.sub(" ", text).strip()


def long_sentences(text):
    merged = _SPACES_RE.sub(" ", text or "")
    sentences = (aggressive_normalize(s) for s in merged.split("."))
    return [s for s in sentences if len(s.split(" ")) >= MIN_SENTENCE_WORDS]


def containment_score(source, target):
    """Percent (0-100, two decimals) of the source's long sentences found in the target."""
    if not (source or "").strip() or not (target or "").strip():
        return 0.0
    sentences = long_sentences(source)
    if not sentences:
        return 0.0
    haystack = aggressive_normalize(target)
    matched = sum(1 for s in sentences if s in haystack)
    return round(matched * 100.0 / len(sentences), 2)


def editor_text(paper):
    # Sentence separator keeps chapters from merging into one sentence
    return ". ".join(strip_html(ch.get("content") or "") for ch in paper.chapters)


def minimum_score(tolerance=None):
    if tolerance is None:
        tolerance = get_setting("integrity_tolerance")
    return 100 - tolerance


def integrity_summary(paper, tolerance=None):
    floor = minimum_score(tolerance)
    score = paper.consistency_score
    return {
        "score": score,
        "status": paper.consistency_status,
        "minimum_score": floor,
        "flagged": score is not None and score < floor,
        "checked_at": (paper.consistency_log or {}).get("checked_at"),
        "verified_by": paper.verified_by,
        "verified_at": paper.verified_at.isoformat() if paper.verified_at else None,
        "note": paper.verification_note,
    }


def clear_integrity(paper):
    """Any change of either input invalidates the previous score and decision."""
    paper.consistency_score = None
    paper.consistency_status = None
    paper.consistency_log = None
    paper.verified_by = None
    paper.verified_at = None
    paper.verification_note = None


def run_consistency_check(paper):
    """Score the paper against its uploaded document. Extraction errors mark CHECK_ERROR."""
    log = current_app.logger
    checked_at = utc_now().isoformat()
    clear_integrity(paper)
    try:
        data = read_document(paper.final_file_url)
        document_text = extract_text(data, paper.final_file_name)
    except (ExtractionError, NotFound, OSError) as e:
        log.exception("Consistency check failed for paper %s", paper.paper_id)
        paper.consistency_status = CONSISTENCY_ERROR
        paper.consistency_log = {"checked_at": checked_at, "error": str(e)}
        db.session.commit()
        return paper

    source = editor_text(paper)
    score = containment_score(source, document_text)
    paper.consistency_score = score
    paper.consistency_status = CONSISTENCY_PENDING
    paper.consistency_log = {
        "checked_at": checked_at,
        "editor_length": len(source),
        "file_length": len(document_text),
        "score": score,
    }
    db.session.commit()
    log.info("Consistency check for paper %s: score %s%%", paper.paper_id, score)
    return paper


def _get_approved_paper(paper_id):
    paper = db.session.get(Paper, paper_id)
    if not paper:
        raise NotFound(f"Paper {paper_id} not found")
    if paper.final_status != FINAL_APPROVED:
        raise GateViolation("Integrity verification requires an advisor-approved final document")
    return paper


def recheck_integrity(paper_id):
    return run_consistency_check(_get_approved_paper(paper_id))


def verify_integrity(paper_id, decision, actor, note=None):
    decision = (decision or "").strip().upper()
    if decision not in VERIFICATION_DECISIONS:
        raise ValidationFailed("Decision must be VERIFIED or REJECTED")
    paper = _get_approved_paper(paper_id)
    if paper.consistency_score is None:
        run_consistency_check(paper)
    if paper.consistency_score is None:
        raise GateViolation("Integrity score is unavailable: the document check failed, recheck the upload")

    paper.consistency_status = decision
    paper.verified_by = actor.user_id
    paper.verified_at = utc_now()
    paper.verification_note = (note or "").strip() or None
    db.session.commit()
    current_app.logger.info(
        "Paper %s integrity %s by %s (score %s)", paper.paper_id, decision, actor.user_id, paper.consistency_score,
    )
    return paper


def verification_queue():
    tolerance = get_setting("integrity_tolerance")
    papers = db.session.execute(
        select(Paper).filter(Paper.final_status == FINAL_APPROVED).order_by(Paper.final_decided_at.desc())
    ).scalars().all()
    return [
        {
            "paper_id": p.paper_id,
            "title": p.title,
            "student_id": p.user_id_fk,
            "student_name": p.student.full_name or p.student.username,
            "final_file_name": p.final_file_name,
            "integrity": integrity_summary(p, tolerance),
        }
        for p in papers
    ]
