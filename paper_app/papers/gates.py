"""
Chapter Gate Resolver.

Effective chapter status is never read straight from the stored chapter
record; it is derived on every read from the record itself, its chapter
schedule (matched by structural id, then by normalized title), and the
assignment's own activation/deadline window.

Precedence, highest first:
  1. stored APPROVED / REVISION always wins
  2. schedule master switch off -> LOCKED
  3. schedule window (bounds fall back to the assignment's) -> OPEN / LOCKED
  4. no schedule: assignment window -> OPEN / LOCKED
  5. no window anywhere -> OPEN
  6. stored SUBMITTED / DRAFT replaces an OPEN result
  7. OPEN with content -> DRAFT
"""
import copy
from datetime import timezone
from typing import NamedTuple, Optional, Tuple

from ..models import (
    CHAPTER_APPROVED, CHAPTER_DRAFT, CHAPTER_LOCKED, CHAPTER_OPEN,
    CHAPTER_REVISION, CHAPTER_SUBMITTED,
)
from ..text_utils import normalize_title, strip_html

MATCH_ID = "id"
MATCH_TITLE = "title"
MATCH_AMBIGUOUS = "ambiguous"
MATCH_NONE = "none"


class Window(NamedTuple):
    start: Optional[object] = None
    end: Optional[object] = None


class ScheduleMatch(NamedTuple):
    kind: str
    schedule: Optional[object] = None
    candidates: Tuple = ()

    @property
    def matched(self):
        return self.schedule is not None


def _naive_utc(dt):
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _within(now, start, end):
    now, start, end = _naive_utc(now), _naive_utc(start), _naive_utc(end)
    if start is not None and now < start:
        return False
    if end is not None and now > end:
        return False
    return True


def assignment_window(assignment):
    if assignment is None:
        return Window()
    return Window(assignment.activation_date, assignment.deadline)


def match_schedule(chapter, schedules):
    """Two-phase lookup: structural id first, normalized title second."""
    schedules = list(schedules or [])
    chapter_id = chapter.get("id")
    if chapter_id not in (None, ""):
        by_id = tuple(s for s in schedules if s.chapter_id not in (None, "") and str(s.chapter_id) == str(chapter_id))
        if len(by_id) == 1:
            return ScheduleMatch(MATCH_ID, by_id[0], by_id)
        if by_id:
            return ScheduleMatch(MATCH_AMBIGUOUS, by_id[0], by_id)

    title = normalize_title(chapter.get("title"))
    if title:
        by_title = tuple(s for s in schedules if normalize_title(s.chapter_title) == title)
        if len(by_title) == 1:
            return ScheduleMatch(MATCH_TITLE, by_title[0], by_title)
        if by_title:
            return ScheduleMatch(MATCH_AMBIGUOUS, by_title[0], by_title)

    return ScheduleMatch(MATCH_NONE)


def resolve_window(schedule, fallback, now):
    """OPEN or LOCKED from the time constraints alone (steps 2-5)."""
    fallback = fallback or Window()
    if schedule is not None:
        if schedule.is_open is False:
            return CHAPTER_LOCKED
        start = schedule.open_date or fallback.start
        end = schedule.close_date or fallback.end
        if start is None and end is None:
            return CHAPTER_OPEN
        return CHAPTER_OPEN if _within(now, start, end) else CHAPTER_LOCKED

    if fallback.start is None and fallback.end is None:
        return CHAPTER_OPEN
    return CHAPTER_OPEN if _within(now, fallback.start, fallback.end) else CHAPTER_LOCKED


def has_content(chapter):
    return bool(strip_html(chapter.get("content") or "").strip())


def resolve_status(chapter, schedule, fallback, now):
    stored = chapter.get("status")
    if stored in (CHAPTER_APPROVED, CHAPTER_REVISION):
        return stored

    gate = resolve_window(schedule, fallback, now)
    if gate == CHAPTER_LOCKED:
        return CHAPTER_LOCKED

    if stored in (CHAPTER_SUBMITTED, CHAPTER_DRAFT):
        return stored
    if has_content(chapter):
        return CHAPTER_DRAFT
    return CHAPTER_OPEN


def resolve_chapters(chapters, schedules, fallback, now):
    """
    Copies of the chapter records with the effective `status` applied,
    plus `window_status` (the time gate alone) and `schedule_match`.
    """
    resolved = []
    for chapter in chapters or []:
        match = match_schedule(chapter, schedules)
        view = copy.deepcopy(chapter)
        view["status"] = resolve_status(chapter, match.schedule, fallback, now)
        view["window_status"] = resolve_window(match.schedule, fallback, now)
        view["schedule_match"] = match.kind
        resolved.append(view)
    return resolved
