import pytest

from paper_app.errors import NotFound, ValidationFailed
from paper_app.settings import update_settings
from paper_app.violations.services import (
    count_unresolved, is_locked, list_violations, lock_state, record_violation,
    reset_violations, violation_summary,
)


def test_threshold_locks_and_reset_unlocks(people):
    alice = people["alice"]
    for kind in ("TAB_SWITCH", "PASTE", "TAB_SWITCH"):
        record_violation(alice.user_id, kind)
    assert count_unresolved(alice.user_id) == 3
    assert is_locked(alice.user_id) is True

    result = reset_violations(alice.user_id)
    assert result == {"affected": 3, "reset_count": 1}
    assert count_unresolved(alice.user_id) == 0
    assert is_locked(alice.user_id) is False

    history = list_violations(alice.user_id)
    assert len(history) == 3
    assert all(v.resolved and v.resolved_at for v in history)


def test_below_threshold_is_not_locked(people):
    record_violation(people["alice"].user_id, "PASTE")
    record_violation(people["alice"].user_id, "PASTE")
    state = lock_state(people["alice"].user_id)
    assert state == {"active_violations": 2, "threshold": 3, "locked": False}


def test_zero_threshold_disables_locking(people):
    update_settings({"violation_threshold": 0})
    for _ in range(5):
        record_violation(people["alice"].user_id, "PASTE")
    assert is_locked(people["alice"].user_id) is False


def test_reset_with_nothing_active_still_counts(people):
    assert reset_violations(people["bob"].user_id) == {"affected": 0, "reset_count": 1}
    assert reset_violations(people["bob"].user_id)["reset_count"] == 2


def test_summary_lists_active_and_previously_reset_students(people):
    record_violation(people["alice"].user_id, "PASTE")
    reset_violations(people["bob"].user_id)
    rows = {r["name"]: r for r in violation_summary()}
    assert set(rows) == {"Alice", "Bob"}
    assert rows["Alice"]["active_violations"] == 1
    assert rows["Bob"]["reset_count"] == 1


def test_validation(people):
    with pytest.raises(ValidationFailed):
        record_violation(people["alice"].user_id, "  ")
    with pytest.raises(NotFound):
        record_violation(people["advisor"].user_id, "PASTE")
    with pytest.raises(NotFound):
        reset_violations(9999)
