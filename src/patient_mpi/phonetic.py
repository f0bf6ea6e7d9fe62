"""Soundex phonetic encoding (blocking key only, never a similarity signal)."""
import re

_NON_LETTERS = re.compile(r"[^A-Z]")

_SOUNDEX_CODES: dict[str, str] = {}
for _letters, _code in (
    ("BFPV", "1"),
    ("CGJKQSXZ", "2"),
    ("DT", "3"),
    ("L", "4"),
    ("MN", "5"),
    ("R", "6"),
):
    for _letter in _letters:
        _SOUNDEX_CODES[_letter] = _code


def soundex(text: str | None) -> str | None:
    """
    Encode a name as a 4-character Soundex code.

    Vowels and H/W/Y carry no code and reset the previous code, so a
    repeated digit separated by one of them is written again.

    >>> soundex("Robert"), soundex("Rupert")
    ('R163', 'R163')
    """
    if not text or not text.strip():
        return None

    cleaned = _NON_LETTERS.sub("", text.upper())
    if not cleaned:
        return None

    result = cleaned[0]
    prev_code = ""
    for char in cleaned[1:]:
        if len(result) >= 4:
            break
        code = _SOUNDEX_CODES.get(char, "")
        if code and code != prev_code:
            result += code
        prev_code = code

    return result.ljust(4, "0")
