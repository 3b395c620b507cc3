"""
Cleaning of untrusted text before it is rendered into a model prompt.

Email subjects and bodies are attacker-controlled. Besides the usual
instruction-override phrases they can try to forge the structure of a batch
prompt (the item delimiter, an ``ID:`` header line) so that one email speaks
for another. Redaction tokens (``[[PII_EMAIL_1]]``) pass through untouched.
"""

import logging
import re
import unicodedata
from typing import List, Tuple

logger = logging.getLogger(__name__)

MAX_SUBJECT_LENGTH = 500
MAX_BODY_LENGTH = 1000
MAX_LABEL_NAME_LENGTH = 100

FILTERED = "[FILTERED]"

# Separates items in a batch prompt
ITEM_DELIMITER = "␞"

# (name, pattern) pairs; the name only shows up in debug logs
INJECTION_PATTERNS: List[Tuple[str, "re.Pattern"]] = [
    ("override", re.compile(r'ignore\s+(previous|all|above)\s+(instructions?|prompts?)', re.IGNORECASE)),
    ("override", re.compile(r'disregard\s+(previous|all|above)', re.IGNORECASE)),
    ("override", re.compile(r'forget\s+(everything|all|previous)', re.IGNORECASE)),
    ("override", re.compile(r'new\s+instructions?:', re.IGNORECASE)),
    ("role", re.compile(r'^[ \t]*(system|assistant|user)[ \t]*:', re.IGNORECASE | re.MULTILINE)),
    ("role", re.compile(r'you\s+are\s+now', re.IGNORECASE)),
    ("role", re.compile(r'pretend\s+(to\s+be|you\s+are)', re.IGNORECASE)),
    ("chat-markup", re.compile(r'```system|<\|im_(start|end)\|>|\[/?INST\]')),
    # a line that would read as the header of another batch item
    ("item-header", re.compile(r'^[ \t]*ID[ \t]*:', re.MULTILINE)),
]

_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]')
_LABEL_CONTROL_CHARS = re.compile(r'[\x00-\x1f\x7f]')


def neutralize_injection(text: str) -> Tuple[str, List[str]]:
    """
    Replace every injection marker with ``[FILTERED]``.

    Returns:
        (cleaned text, names of the patterns that matched)
    """
    hits = []
    for name, pattern in INJECTION_PATTERNS:
        text, count = pattern.subn(FILTERED, text)
        if count:
            hits.append(name)
    return text, hits


def sanitize_text(text: str, max_length: int = MAX_BODY_LENGTH) -> str:
    """
    Prepare untrusted text for a prompt.

    Control characters and the item delimiter are dropped, the text is NFKC
    normalised and cut to ``max_length`` (an ellipsis marks the cut), and
    injection markers are neutralised.
    """
    if not text:
        return ""
    if not isinstance(text, str):
        text = str(text)

    text = _CONTROL_CHARS.sub('', text)
    text = unicodedata.normalize('NFKC', text).replace(ITEM_DELIMITER, '')

    if len(text) > max_length:
        text = text[:max_length] + "..."

    text, hits = neutralize_injection(text)
    if hits:
        logger.warning(f"Neutralised possible prompt injection ({', '.join(sorted(set(hits)))})")
    return text


def sanitize_subject(subject: str) -> str:
    return sanitize_text(subject, MAX_SUBJECT_LENGTH)


def sanitize_body(body: str) -> str:
    return sanitize_text(body, MAX_BODY_LENGTH)


def sanitize_label_name(name: str) -> str:
    """
    Normalise a label name returned by the model.

    Control characters, path separators and surrounding quotes are removed.
    """
    if not name:
        return ""

    name = _LABEL_CONTROL_CHARS.sub('', str(name))
    name = name.replace('..', '').replace('\\', '')
    name = name.strip().strip('"\'`').strip()
    return name[:MAX_LABEL_NAME_LENGTH]
