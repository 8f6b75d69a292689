"""
Flattening of template page structures into a paper's chapter list.

A template is a list of pages; any page may carry a `structure` list of
chapter definitions ({id, title, minWords, subsections}). Chapters are
collected page by page, in page order, and each one's word budget is the
recursive sum of `minWords` over the chapter and all nested subsections.
"""
import copy
import json
from typing import List, Tuple

from ..models import CHAPTER_OPEN
from ..text_utils import normalize_title


def _min_words(item):
    raw = item.get("minWords", item.get("min_words", 0))
    try:
        return max(0, int(raw or 0))
    except (TypeError, ValueError):
        return 0


def word_budget(item) -> int:
    total = _min_words(item)
    subsections = item.get("subsections")
    if isinstance(subsections, list):
        for sub in subsections:
            if isinstance(sub, dict):
                total += word_budget(sub)
    return total


def chapter_key(chapter_id, title):
    """Stable schedule key: the structural id when present, else the normalized title."""
    if chapter_id not in (None, ""):
        return str(chapter_id)
    return normalize_title(title)


def load_pages(pages):
    if isinstance(pages, str):
        try:
            pages = json.loads(pages)
        except ValueError:
            return []
    return pages if isinstance(pages, list) else []


def new_chapter_record(definition, title):
    chapter_id = definition.get("id")
    return {
        "id": str(chapter_id) if chapter_id not in (None, "") else None,
        "key": chapter_key(chapter_id, title),
        "title": title,
        "min_words": word_budget(definition),
        "subsections": copy.deepcopy(definition.get("subsections") or []),
        "content": "",
        "word_count": 0,
        "status": CHAPTER_OPEN,
        "feedback": None,
        "feedback_history": [],
    }


def template_chapters(pages) -> List[dict]:
    chapters = []
    for page in load_pages(pages):
        if not isinstance(page, dict):
            continue
        structure = page.get("structure")
        if not isinstance(structure, list) or not structure:
            continue
        page_name = (page.get("name") or page.get("title") or "").strip()
        for definition in structure:
            if not isinstance(definition, dict):
                continue
            # Explicit chapter title wins, else the owning page's name
            title = (definition.get("title") or "").strip() or page_name
            if not title:
                title = f"Chapter {len(chapters) + 1}"
            chapters.append(new_chapter_record(definition, title))
    return chapters


def resolve_structure(pages) -> Tuple[List[dict], int]:
    """Flat chapter records and the paper's target word count."""
    chapters = template_chapters(pages)
    target = sum(ch["min_words"] for ch in chapters)
    return chapters, target
