"""Heuristic contact extraction from free-text user messages.

Used only to give the agent a head start (as a system context message); the
results are never validated or retried.
"""

from __future__ import annotations

import json
import re

from ..types import ChatMessage, ContactHint

_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}")
_PHONE_RE = re.compile(r"(?<![\d])(?:\+?\d[\d\-\s()（）]{8,}\d)(?![\d])")
_COMPANY_LABEL_RE = re.compile(
    r"(?:会社名|店舗名|店名|company)\s*[:：は]?\s*([^\s、。,，]+)",
    re.IGNORECASE,
)
_COMPANY_SUFFIX_RE = re.compile(
    r"((?:株式会社|有限会社|合同会社)[^\s、。,，]+|[^\s、。,，]+(?:株式会社|有限会社|合同会社|商店|ストア))"
)

PHONE_MIN_DIGITS = 10
PHONE_MAX_DIGITS = 20


def extract_email(text: str) -> str:
    m = _EMAIL_RE.search(text)
    return m.group(0) if m else ""


def extract_phone(text: str) -> str:
    """First number-like run with 10-20 digits, returned digits only."""
    for m in _PHONE_RE.finditer(text):
        digits = re.sub(r"\D", "", m.group(0))
        if PHONE_MIN_DIGITS <= len(digits) <= PHONE_MAX_DIGITS:
            return digits
    return ""


def extract_company(text: str) -> str:
    m = _COMPANY_LABEL_RE.search(text)
    if m:
        return m.group(1)
    m = _COMPANY_SUFFIX_RE.search(text)
    return m.group(1) if m else ""


def extract_contact_hint(text: str) -> ContactHint | None:
    """Return a ContactHint, or ``None`` when nothing was found."""
    if not text:
        return None
    email = extract_email(text)
    # Blank the email out so its digits are not mistaken for a phone number
    remainder = text.replace(email, " ") if email else text
    hint = ContactHint(
        company=extract_company(remainder),
        email=email,
        phone=extract_phone(remainder),
    )
    return None if hint.is_empty() else hint


def contact_hint_message(hint: ContactHint) -> ChatMessage:
    """System message carrying *hint* as JSON, prepended to the agent call."""
    return ChatMessage(
        role="system",
        content=json.dumps({"contactHint": hint.to_dict()}, ensure_ascii=False),
    )
