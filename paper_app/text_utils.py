import re
from markupsafe import Markup

_TAG_RE = re.compile(r"(<[^>]*>)")


def strip_html(content):
    """Plain text of editor HTML; block boundaries become spaces."""
    if not content:
        return ""
    spaced = _TAG_RE.sub(r" \1 ", content)
    return str(Markup(spaced).striptags())


def count_words(content):
    text = strip_html(content)
    return len(text.split()) if text else 0


def normalize_title(title):
    return (title or "").strip().lower()
