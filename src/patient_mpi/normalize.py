"""
Demographic Normalization

Canonical forms for names, phones and contact fields so that values
captured through different intake channels compare equal.
"""

import hashlib
import re
import unicodedata

from patient_mpi.phonetic import soundex

_NON_NAME_CHARS = re.compile(r"[^a-z ]")
_WHITESPACE = re.compile(r"\s+")
_NON_DIGITS = re.compile(r"[^0-9]")


def fold_accents(text: str) -> str:
    """Decompose to NFD and drop combining marks (é -> e)."""
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_name(name: str | None) -> str | None:
    """
    Normalize a name for matching.

    Lowercases, strips diacritics, removes anything outside [a-z ],
    and collapses whitespace.

    >>> normalize_name("José  García")
    'jose garcia'
    """
    if not name:
        return None

    folded = fold_accents(name.lower())
    cleaned = _NON_NAME_CHARS.sub("", folded)
    return _WHITESPACE.sub(" ", cleaned).strip()


def normalize_phone(phone: str | None) -> str | None:
    """Keep only the digits of a phone number."""
    if not phone:
        return None
    return _NON_DIGITS.sub("", phone)


def normalize_email(email: str | None) -> str | None:
    if not email:
        return None
    return email.strip().lower() or None


def normalize_state(state: str | None) -> str | None:
    if not state:
        return None
    return state.strip().upper() or None


def match_hash(
    first_name: str | None,
    last_name: str | None,
    date_of_birth: str | None,
    zip_code: str | None,
) -> str:
    """
    Hash of the coarse matching fields.

    Two records with the same first/last Soundex, DOB and 5-digit zip
    share a hash, which allows a quick equality pre-check.
    """
    key = "".join([
        soundex(first_name) or "",
        soundex(last_name) or "",
        date_of_birth or "",
        (zip_code or "")[:5],
    ])
    return hashlib.sha256(key.encode("utf-8")).hexdigest()
