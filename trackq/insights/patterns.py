"""
Heuristic extraction rules used by the insight engine.

All functions are pure so the rules can be unit-tested (and swapped) without
touching insight assembly. Results are ordered deterministically: by count,
then by first appearance.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterable, Sequence

from trackq.storage.models import Role

TICKET_PATTERN = re.compile(r"[A-Z]+-\d+")
BRACKET_PATTERN = re.compile(r"\[([^\]]+)\]")

# Checked in order; the first keyword contained in the app name wins
APP_CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("responding", ("slack", "mail", "outlook", "messages", "teams")),
    ("meetings", ("zoom", "meet", "facetime", "webex", "calendar")),
    ("creating", ("xcode", "code", "sublime", "terminal", "figma", "sketch")),
    ("discovery", ("safari", "chrome", "firefox", "notion", "confluence")),
    ("planning", ("linear", "jira", "asana", "trello", "miro")),
    ("personal", ("spotify", "music", "netflix", "youtube", "twitter", "reddit")),
)


def extract_title_patterns(title: str) -> list[str]:
    """
    Candidate patterns from one window title.

    The first ticket-style token contributes its prefix ("DISP-42" -> "DISP");
    the first bracketed segment contributes its content.
    """
    found: list[str] = []
    ticket = TICKET_PATTERN.search(title)
    if ticket:
        found.append(ticket.group(0).split("-", 1)[0])
    bracket = BRACKET_PATTERN.search(title)
    if bracket:
        found.append(bracket.group(1))
    return found


def extract_common_patterns(titles: Sequence[str]) -> list[str]:
    """Patterns present in at least max(2, len(titles) // 3) titles, most frequent first."""
    counts: Counter[str] = Counter()
    for title in titles:
        counts.update(extract_title_patterns(title))

    threshold = max(2, len(titles) // 3)
    # Counter preserves first-insertion order, so the sort is stable on ties
    return [pattern for pattern, n in sorted(counts.items(), key=lambda kv: -kv[1]) if n >= threshold]


def infer_category_for_app(app_name: str) -> str | None:
    app = app_name.lower()
    for slug, keywords in APP_CATEGORY_KEYWORDS:
        if any(keyword in app for keyword in keywords):
            return slug
    return None


def score_roles(titles: Iterable[str], roles: Sequence[Role]) -> list[tuple[Role, int]]:
    """Count, per role, detection-keyword hits across the given window titles."""
    scores = [0] * len(roles)
    for title in titles:
        lowered = title.lower()
        for index, role in enumerate(roles):
            scores[index] += sum(1 for p in role.detection_patterns if p.lower() in lowered)
    return list(zip(roles, scores))


def infer_role(titles: Sequence[str], roles: Sequence[Role], session_count: int) -> Role | None:
    """Top-scoring role if its score reaches session_count // 3 (earlier role wins ties)."""
    best: tuple[Role, int] | None = None
    for role, score in score_roles(titles, roles):
        if score > 0 and (best is None or score > best[1]):
            best = (role, score)
    if best is None or best[1] < session_count // 3:
        return None
    return best[0]
