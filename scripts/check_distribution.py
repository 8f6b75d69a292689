import os
import sys
import argparse

# Ensure project root is on sys.path
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

from paper_app import create_app, db
from paper_app.assignments.services import distribute, eligible_students
from paper_app.models import Assignment, Paper
from sqlalchemy import select


def report(assignment, fix=False):
    students = eligible_students(assignment.batch_id_fk)
    have = set(db.session.execute(
        select(Paper.user_id_fk).filter(Paper.assignment_id_fk == assignment.assignment_id)
    ).scalars().all())
    missing = [s for s in students if s.user_id not in have]
    print(f"[{assignment.assignment_id}] {assignment.title}: "
          f"{len(students)} eligible, {len(have)} papers, {len(missing)} missing")
    for s in missing:
        print(f"    missing: {s.user_id} {s.username}")
    if fix and missing:
        result = distribute(assignment)
        print(f"    distributed: created {result['created']}, failed {result['failed']}")


def main():
    parser = argparse.ArgumentParser(description="Report (and optionally repair) papers missing from distribution.")
    parser.add_argument("--assignment", type=int, default=None, help="Only check this assignment id")
    parser.add_argument("--fix", action="store_true", help="Re-run distribution for assignments with gaps")
    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        q = select(Assignment).order_by(Assignment.assignment_id)
        if args.assignment:
            q = q.filter(Assignment.assignment_id == args.assignment)
        assignments = db.session.execute(q).scalars().all()
        if not assignments:
            print("No assignments found.")
            return
        for a in assignments:
            report(a, fix=args.fix)


if __name__ == "__main__":
    main()
