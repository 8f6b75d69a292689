from io import BytesIO

import pytest
from sqlalchemy import select
from werkzeug.datastructures import FileStorage

from paper_app import db
from paper_app.assignments.services import distribute
from paper_app.errors import GateViolation, ValidationFailed
from paper_app.integrity.services import verify_integrity
from paper_app.models import Paper
from paper_app.papers.services import (
    decide_chapter, decide_final_document, delete_final_document, grade_paper,
    save_chapter_draft, serialize_paper, submit_chapter, unapprove_chapter, upload_final_document,
)

from conftest import make_assignment, make_template

SENTENCES = [
    "The survey collected responses from two hundred participants across four regional campuses during the spring term of the academic year",
    "Participants were selected using stratified random sampling so that every faculty and every year of study was fairly represented in the data",
]


def upload(name="final.txt", body=None):
    text = body if body is not None else ". ".join(SENTENCES) + "."
    return FileStorage(stream=BytesIO(text.encode("utf-8")), filename=name)


@pytest.fixture()
def paper(people):
    a = make_assignment(make_template())
    distribute(a)
    return db.session.execute(
        select(Paper).filter_by(assignment_id_fk=a.assignment_id, user_id_fk=people["alice"].user_id)
    ).scalars().one()


def approve_all(paper, people):
    for index, sentence in enumerate(SENTENCES):
        save_chapter_draft(paper.paper_id, index, f"<p>{sentence}.</p>", people["alice"])
        submit_chapter(paper.paper_id, index, people["alice"])
        decide_chapter(paper.paper_id, index, "APPROVED", None, people["advisor"])


def test_final_gate_opens_only_when_every_chapter_is_approved(paper, people):
    assert paper.final_submission_unlocked is False
    with pytest.raises(GateViolation):
        upload_final_document(paper.paper_id, upload(), people["alice"])
    approve_all(paper, people)
    assert paper.final_submission_unlocked is True
    assert paper.content_approval_status == "APPROVED"


def test_upload_then_approve_blocks_deletion(paper, people):
    approve_all(paper, people)
    upload_final_document(paper.paper_id, upload(), people["alice"])
    assert paper.final_status == "UPLOADED"
    assert paper.final_file_name == "final.txt"
    assert paper.final_file_size > 0

    decide_final_document(paper.paper_id, "APPROVED", None, people["advisor"])
    assert paper.final_status == "APPROVED"
    with pytest.raises(GateViolation):
        delete_final_document(paper.paper_id, people["alice"])
    with pytest.raises(GateViolation):
        upload_final_document(paper.paper_id, upload(), people["alice"])


def test_final_approval_runs_consistency_check(paper, people):
    approve_all(paper, people)
    upload_final_document(paper.paper_id, upload(), people["alice"])
    decide_final_document(paper.paper_id, "APPROVED", None, people["advisor"])
    assert paper.consistency_status == "PENDING_VERIFICATION"
    assert paper.consistency_score == 100.0


def test_final_revision_needs_feedback_and_allows_reupload(paper, people):
    approve_all(paper, people)
    upload_final_document(paper.paper_id, upload(), people["alice"])
    with pytest.raises(ValidationFailed):
        decide_final_document(paper.paper_id, "REVISION", "", people["advisor"])
    decide_final_document(paper.paper_id, "REVISION", "Fix the layout", people["advisor"])
    assert paper.final_status == "REVISION"
    assert paper.final_feedback == "Fix the layout"

    upload_final_document(paper.paper_id, upload(name="final_v2.txt"), people["alice"])
    assert paper.final_status == "UPLOADED"
    assert paper.final_feedback is None
    assert paper.final_file_name == "final_v2.txt"


def test_delete_pending_upload(paper, people):
    approve_all(paper, people)
    upload_final_document(paper.paper_id, upload(), people["alice"])
    delete_final_document(paper.paper_id, people["alice"])
    assert paper.final_file_url is None
    assert paper.final_status is None


def test_rejects_unsupported_file_type(paper, people):
    approve_all(paper, people)
    with pytest.raises(ValidationFailed):
        upload_final_document(paper.paper_id, upload(name="final.exe"), people["alice"])


def test_unapprove_resets_decided_final_document(paper, people):
    approve_all(paper, people)
    upload_final_document(paper.paper_id, upload(), people["alice"])
    decide_final_document(paper.paper_id, "APPROVED", None, people["advisor"])
    unapprove_chapter(paper.paper_id, 1, people["advisor"])
    assert paper.final_status == "UPLOADED"
    assert paper.consistency_status is None
    assert paper.final_submission_unlocked is False


def test_grading_requires_final_approval(paper, people):
    approve_all(paper, people)
    with pytest.raises(GateViolation):
        grade_paper(paper.paper_id, 80, None, people["examiner"])
    upload_final_document(paper.paper_id, upload(), people["alice"])
    with pytest.raises(GateViolation):
        grade_paper(paper.paper_id, 80, None, people["examiner"])
    decide_final_document(paper.paper_id, "APPROVED", None, people["advisor"])

    grade_paper(paper.paper_id, 82.5, "Solid work", people["examiner"])
    assert paper.grade == 82.5
    assert serialize_paper(paper)["passed"] is True

    # re-grading overwrites
    grade_paper(paper.paper_id, 40, None, people["examiner"])
    assert paper.grade == 40
    assert paper.grade_feedback is None
    assert serialize_paper(paper)["passed"] is False


def test_grade_range_validated(paper, people):
    with pytest.raises(ValidationFailed):
        grade_paper(paper.paper_id, 101, None, people["examiner"])
    with pytest.raises(ValidationFailed):
        grade_paper(paper.paper_id, "abc", None, people["examiner"])
    for value in ("nan", "inf", float("-inf")):
        with pytest.raises(ValidationFailed):
            grade_paper(paper.paper_id, value, None, people["examiner"], bypass_gates=True)
    assert paper.grade is None
    assert paper.graded_by is None


def test_graded_paper_is_read_only(paper, people):
    approve_all(paper, people)
    grade_paper(paper.paper_id, 75, None, people["helper"], bypass_gates=True)
    with pytest.raises(GateViolation):
        unapprove_chapter(paper.paper_id, 0, people["advisor"])
    with pytest.raises(GateViolation):
        upload_final_document(paper.paper_id, upload(), people["alice"])


def test_rejected_integrity_blocks_grading(paper, people):
    approve_all(paper, people)
    upload_final_document(paper.paper_id, upload(), people["alice"])
    decide_final_document(paper.paper_id, "APPROVED", None, people["advisor"])
    verify_integrity(paper.paper_id, "REJECTED", people["verifier"], note="Document differs from the editor")
    with pytest.raises(GateViolation):
        grade_paper(paper.paper_id, 70, None, people["examiner"])
