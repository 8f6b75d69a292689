import copy
from io import BytesIO

import docx
import fitz
import pytest
from sqlalchemy import select
from sqlalchemy.orm.attributes import flag_modified
from werkzeug.datastructures import FileStorage

from paper_app import db
from paper_app.assignments.services import distribute
from paper_app.errors import GateViolation, ValidationFailed
from paper_app.integrity.extract import ExtractionError, extract_text
from paper_app.integrity.services import (
    containment_score, long_sentences, recheck_integrity, verification_queue, verify_integrity,
)
from paper_app.models import Paper
from paper_app.papers.services import decide_final_document, upload_final_document
from paper_app.settings import update_settings

from conftest import make_assignment, make_template

LONG_A = ("Our analysis shows that students who drafted early received more detailed feedback "
          "and revised their chapters with noticeably greater confidence overall")
LONG_B = ("A smaller group of students submitted every chapter close to the deadline and "
          "reported that the review cycle felt rushed and difficult to follow")


def test_containment_of_identical_text_is_full():
    text = f"{LONG_A}. {LONG_B}."
    assert containment_score(text, text) == 100.0


def test_containment_ignores_case_punctuation_and_numbers():
    source = f"{LONG_A}."
    target = "Intro: " + LONG_A.upper().replace("ANALYSIS", "ANALYSIS,") + " (see 2 tables)."
    assert containment_score(source, target) == 100.0


def test_partial_containment_rounds_to_two_decimals():
    source = f"{LONG_A}. {LONG_B}. {LONG_A} again."
    assert containment_score(source, f"{LONG_A}. {LONG_B}.") == pytest.approx(66.67)


def test_short_sentences_are_ignored():
    assert long_sentences("Too short. Also short.") == []
    assert containment_score("Too short.", "Too short.") == 0.0


def test_empty_inputs_score_zero():
    assert containment_score("", LONG_A) == 0.0
    assert containment_score(LONG_A, "   ") == 0.0


def test_extract_txt_docx_and_pdf():
    assert extract_text(b"plain words", "final.txt") == "plain words"

    document = docx.Document()
    document.add_paragraph("paragraph words")
    table = document.add_table(rows=1, cols=1)
    table.rows[0].cells[0].text = "cell words"
    buf = BytesIO()
    document.save(buf)
    text = extract_text(buf.getvalue(), "final.docx")
    assert "paragraph words" in text
    assert "cell words" in text

    pdf = fitz.open()
    pdf.new_page().insert_text((72, 72), "pdf words")
    data = pdf.tobytes()
    pdf.close()
    assert "pdf words" in extract_text(data, "final.PDF")


def test_extract_rejects_corrupt_and_unknown_files():
    with pytest.raises(ExtractionError):
        extract_text(b"not a pdf", "final.pdf")
    with pytest.raises(ExtractionError):
        extract_text(b"data", "final.odt")


def _approved_paper(people, body, filename="final.txt"):
    a = make_assignment(make_template())
    distribute(a)
    paper = db.session.execute(
        select(Paper).filter_by(assignment_id_fk=a.assignment_id, user_id_fk=people["alice"].user_id)
    ).scalars().one()
    structure = copy.deepcopy(paper.chapters)
    for chapter, text in zip(structure, (LONG_A, LONG_B)):
        chapter["content"] = f"<p>{text}.</p>"
        chapter["status"] = "APPROVED"
    paper.structure = structure
    flag_modified(paper, "structure")
    db.session.commit()
    upload_final_document(paper.paper_id, FileStorage(stream=BytesIO(body), filename=filename), people["alice"])
    decide_final_document(paper.paper_id, "APPROVED", None, people["advisor"])
    return paper


def test_low_score_is_flagged_but_still_verifiable(people):
    paper = _approved_paper(people, f"{LONG_A}. Something else entirely.".encode())
    assert paper.consistency_score == 50.0
    queue = verification_queue()
    assert len(queue) == 1
    assert queue[0]["integrity"]["flagged"] is True
    assert queue[0]["integrity"]["minimum_score"] == 90

    verify_integrity(paper.paper_id, "VERIFIED", people["verifier"], note="Checked by hand")
    assert paper.consistency_status == "VERIFIED"
    assert paper.verified_by == people["verifier"].user_id


def test_tolerance_setting_moves_the_flag(people):
    _approved_paper(people, f"{LONG_A}.".encode())
    update_settings({"integrity_tolerance": 60})
    assert verification_queue()[0]["integrity"]["flagged"] is False


def test_unreadable_document_marks_check_error_and_recheck(people):
    paper = _approved_paper(people, b"garbage bytes", filename="final.pdf")
    assert paper.consistency_status == "CHECK_ERROR"
    assert paper.consistency_score is None
    assert "error" in paper.consistency_log
    with pytest.raises(GateViolation):
        verify_integrity(paper.paper_id, "VERIFIED", people["verifier"])
    recheck_integrity(paper.paper_id)
    assert paper.consistency_status == "CHECK_ERROR"


def test_verification_requires_approved_final(people):
    a = make_assignment(make_template())
    distribute(a)
    paper = db.session.execute(select(Paper)).scalars().first()
    with pytest.raises(GateViolation):
        verify_integrity(paper.paper_id, "VERIFIED", people["verifier"])
    with pytest.raises(ValidationFailed):
        verify_integrity(paper.paper_id, "MAYBE", people["verifier"])
