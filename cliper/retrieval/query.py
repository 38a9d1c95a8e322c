"""
Query decomposition and folder scoping for retrieval.
"""

import re
from typing import List

TOKEN_PATTERN = re.compile(r"[a-z0-9]+")
FRIEND_PATTERN = re.compile(r"\bmy\s+friend\s+(?P<name>[A-Za-z][\w'-]*)", re.IGNORECASE)
WORK_PATTERN = re.compile(r"\b(work|meeting|meetings|project|projects|office)\b", re.IGNORECASE)
PREFERENCE_PATTERN = re.compile(r"\b(prefer|preference|preferences|favorite|favourite)\b", re.IGNORECASE)
REMINDER_PATTERN = re.compile(r"\b(remind|reminder|reminders)\b", re.IGNORECASE)

FRIENDS_FOLDER = "friends"
WORK_FOLDER = "work"
PREFERENCES_FOLDER = "self/preferences"
REMINDERS_FOLDER = "self/reminders"


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.strip().lower()).strip("-")


def decompose_query(query: str, max_terms: int = 3) -> List[str]:
    """
    Up to ``max_terms`` distinct lower-case alphanumeric tokens longer than
    two characters, in query order. Falls back to the whole lower-cased
    query when no token qualifies.
    """
    terms: List[str] = []
    for token in TOKEN_PATTERN.findall(query.lower()):
        if len(token) <= 2 or token in terms:
            continue
        terms.append(token)
        if len(terms) >= max_terms:
            break
    if not terms:
        whole = query.strip().lower()
        return [whole] if whole else []
    return terms


def resolve_folder_scopes(query: str) -> List[str]:
    """Folder prefixes suggested by lexical cues in ``query``."""
    scopes: List[str] = []
    friend = FRIEND_PATTERN.search(query)
    if friend:
        scopes.append(f"{FRIENDS_FOLDER}/{slugify(friend.group('name'))}")
    if WORK_PATTERN.search(query):
        scopes.append(WORK_FOLDER)
    if PREFERENCE_PATTERN.search(query):
        scopes.append(PREFERENCES_FOLDER)
    if REMINDER_PATTERN.search(query):
        scopes.append(REMINDERS_FOLDER)
    return scopes


def in_scopes(folder: str, scopes: List[str]) -> bool:
    folder = folder.lower()
    return any(folder.startswith(scope.lower()) for scope in scopes)
