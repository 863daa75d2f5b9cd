"""Deterministic intent matching for identity and recall questions.

Utterances that match one of these intents are answered without the
completion backend:
- "last screenshot" / "what was on my screen"  -> screenshot recall
- "that's me" / "this is Alice"                -> identity assertion
- "who is that?"                               -> identity query

Assertions must be the whole utterance. A sentence that merely contains
"that's me", or that negates it, binds nothing.
"""

import re
from dataclasses import dataclass
from enum import Enum

from ..memory.models import USER_SUBJECT

# First words that never start a name in "this is <name>".
NAME_STOPWORDS = frozenset({"me", "my", "the", "a"})

NEGATIONS = frozenset(
    {"not", "dont", "don't", "isnt", "isn't", "wasnt", "wasn't", "never", "nope"}
)

SCREENSHOT_PHRASES = (
    "last screenshot",
    "last screen shot",
    "previous screenshot",
    "what was on my screen",
    "what did you just see",
)

_PREFIX = r"(?:(?:yes|yeah|yep|no|oh|well|ok|okay)\s+)?"

SELF_ASSERTION_RE = re.compile(
    rf"^{_PREFIX}(?:thats|that's|that is|this is|its|it's|it is)\s+me$"
)

SELF_DESCRIBED_RE = re.compile(
    rf"^{_PREFIX}(?:the\s+)?(?:man|woman|person|photo|picture|image)"
    r"(?:\s+in\s+the\s+(?:photo|picture|image|screenshot))?"
    r"\s+(?:is|was)\s+me$"
)

# Matched against the raw text, so a comma inside the name breaks the match.
NAMED_ASSERTION_RE = re.compile(
    r"^(?:(?:yes|yeah|yep|no|oh|well|ok|okay)[,!]?\s+)?"
    r"(?:thats|that's|that is|this is)\s+"
    r"(?P<name>[^\W\d_][\w'-]*(?:\s+[^\W\d_][\w'-]*){0,2})"
    r"\s*[.!]*$",
    re.IGNORECASE,
)

WHO_QUERY_RE = re.compile(r"^who(?:'s|s|se)?\b")


class IntentType(Enum):
    """Intents answered without the completion backend."""

    SCREENSHOT_RECALL = "screenshot_recall"
    IDENTITY_ASSERTION = "identity_assertion"
    IDENTITY_QUERY = "identity_query"


@dataclass(frozen=True)
class Intent:
    """A matched intent; `subject` is set for identity assertions."""

    type: IntentType
    subject: str | None = None


def _straighten(text: str) -> str:
    return text.replace("’", "'").replace("‘", "'")


def _clean(text: str) -> str:
    """Straighten quotes, drop punctuation and collapse whitespace. Keeps case."""
    text = re.sub(r"[^\w\s']", " ", _straighten(text))
    return re.sub(r"\s+", " ", text).strip()


def normalize_utterance(text: str) -> str:
    """Lowercased, punctuation-free form used for matching."""
    return _clean(text).lower()


def asks_last_screenshot(text: str) -> bool:
    """True if the user asks what was on screen most recently."""
    norm = normalize_utterance(text)
    return any(phrase in norm for phrase in SCREENSHOT_PHRASES)


def match_identity_assertion(text: str, window_title: str = "") -> str | None:
    """Extract the subject of an explicit identity assertion.

    A name must be capitalized, like a proper noun, and must not be part
    of `window_title`: "this is Notepad" while Notepad is the active
    window talks about the app, not a person.

    Returns:
        "user" when the user says the image shows them, the given name for
        "this/that is <Name>", or None when the utterance asserts nothing.
    """
    norm = normalize_utterance(text)
    if NEGATIONS.intersection(norm.split()):
        return None
    if SELF_ASSERTION_RE.match(norm) or SELF_DESCRIBED_RE.match(norm):
        return USER_SUBJECT

    match = NAMED_ASSERTION_RE.match(_straighten(text).strip())
    if match is None:
        return None
    name = re.sub(r"\s+", " ", match.group("name"))
    words = name.split()
    if words[0].lower() in NAME_STOPWORDS:
        return None
    if not all(word[0].isupper() for word in words):
        return None
    if window_title and name.casefold() in window_title.casefold():
        return None
    return name


def is_who_query(text: str) -> bool:
    """True if the utterance is a "who ..." question."""
    return WHO_QUERY_RE.match(normalize_utterance(text)) is not None


def classify(text: str, window_title: str = "") -> Intent | None:
    """Match an utterance against the deterministic intents, in priority order.

    `window_title` is the title of the last observed window, if any.
    """
    if asks_last_screenshot(text):
        return Intent(IntentType.SCREENSHOT_RECALL)

    subject = match_identity_assertion(text, window_title)
    if subject is not None:
        return Intent(IntentType.IDENTITY_ASSERTION, subject=subject)

    if is_who_query(text):
        return Intent(IntentType.IDENTITY_QUERY)

    return None
