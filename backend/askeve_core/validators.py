from __future__ import annotations

import re

from .errors import ValidationError

_NAME_PREFIX_RE = re.compile(
    r"^(?:hi|hello|hey)?[\s,]*(?:my name is|my name's|i'm|i am|it's|it is|this is|call me|name is)\s+",
    re.IGNORECASE,
)
_NAME_WORD_RE = re.compile(r"^[A-Za-z][A-Za-z'-]*$")
_NAME_STOP_WORDS = {
    "yes",
    "yeah",
    "yep",
    "no",
    "nope",
    "ok",
    "okay",
    "sure",
    "fine",
    "thanks",
    "thank",
    "hello",
    "hi",
    "hey",
    "please",
    "nurse",
    "help",
    "what",
    "why",
    "how",
    "who",
    "the",
    "phone",
    "email",
    "call",
    "none",
    "nothing",
    "anonymous",
}
_MAX_NAME_WORDS = 3
_MAX_NAME_LENGTH = 50

_PHONE_STRIP_RE = re.compile(r"[\s().-]")
_UK_PHONE_RE = re.compile(r"^(?:\+44|0044|44|0)([1-9]\d{8,9})$")
_EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,}$")

_PHONE_CHOICE_RE = re.compile(r"^\s*(?:1|one|option 1)\s*[.)]?\s*$|\b(?:phone|call|ring|telephone|mobile)\b", re.IGNORECASE)
_EMAIL_CHOICE_RE = re.compile(r"^\s*(?:2|two|option 2)\s*[.)]?\s*$|\b(?:e-?mail)\b", re.IGNORECASE)


def _title_word(word: str) -> str:
    return "-".join(part[:1].upper() + part[1:].lower() for part in word.split("-"))


def normalize_name(raw: str) -> str:
    text = _NAME_PREFIX_RE.sub("", (raw or "").strip()).strip(" .!,")
    words = text.split()
    if not words or len(words) > _MAX_NAME_WORDS or len(text) > _MAX_NAME_LENGTH:
        raise ValidationError("name", "Please tell me the name you'd like the nurse to use.")
    for word in words:
        if not _NAME_WORD_RE.fullmatch(word):
            raise ValidationError("name", "Names can only contain letters, hyphens and apostrophes.")
    if words[0].lower() in _NAME_STOP_WORDS:
        raise ValidationError("name", "That doesn't look like a name.")
    if len(text.replace(" ", "")) < 2:
        raise ValidationError("name", "Please give at least two letters of your name.")
    return " ".join(_title_word(word) for word in words)


def normalize_uk_phone(raw: str) -> str:
    digits = _PHONE_STRIP_RE.sub("", (raw or "").strip())
    match = _UK_PHONE_RE.fullmatch(digits)
    if not match:
        raise ValidationError(
            "phone",
            "That doesn't look like a UK phone number. Please use a format like 07123 456789.",
        )
    return f"+44{match.group(1)}"


def normalize_email(raw: str) -> str:
    candidate = (raw or "").strip().lower()
    if not _EMAIL_RE.fullmatch(candidate):
        raise ValidationError("email", "That doesn't look like an email address. Please check and try again.")
    return candidate


def parse_contact_method(raw: str) -> str:
    text = (raw or "").strip()
    wants_phone = bool(_PHONE_CHOICE_RE.search(text))
    wants_email = bool(_EMAIL_CHOICE_RE.search(text))
    if wants_phone and not wants_email:
        return "phone"
    if wants_email and not wants_phone:
        return "email"
    raise ValidationError("contact_method", "Please reply 1 for a phone call or 2 for an email.")


def is_valid_uk_phone(raw: str) -> bool:
    try:
        normalize_uk_phone(raw)
    except ValidationError:
        return False
    return True
