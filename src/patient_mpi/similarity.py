"""
String Similarity

Jaro and Jaro-Winkler similarity in [0, 1]. Inputs are accent-folded,
trimmed and uppercased before comparison so that raw query strings score
the same way as stored normalized values.
"""

from patient_mpi.normalize import fold_accents

WINKLER_PREFIX_SCALE = 0.1
WINKLER_MAX_PREFIX = 4


def _prepare(text: str) -> str:
    return fold_accents(text).upper().strip()


def jaro_similarity(s1: str | None, s2: str | None) -> float:
    """Jaro similarity: character overlap within a sliding window."""
    if not s1 or not s2:
        return 0.0

    str1 = _prepare(s1)
    str2 = _prepare(s2)
    if not str1 or not str2:
        return 0.0

    if str1 == str2:
        return 1.0

    len1 = len(str1)
    len2 = len(str2)

    max_dist = max(0, max(len1, len2) // 2 - 1)
    s1_matches = [False] * len1
    s2_matches = [False] * len2

    matches = 0
    for i in range(len1):
        start = max(0, i - max_dist)
        end = min(i + max_dist + 1, len2)
        for j in range(start, end):
            if s2_matches[j] or str1[i] != str2[j]:
                continue
            s1_matches[i] = True
            s2_matches[j] = True
            matches += 1
            break

    if matches == 0:
        return 0.0

    transpositions = 0
    k = 0
    for i in range(len1):
        if not s1_matches[i]:
            continue
        while not s2_matches[k]:
            k += 1
        if str1[i] != str2[k]:
            transpositions += 1
        k += 1

    return (
        matches / len1
        + matches / len2
        + (matches - transpositions / 2) / matches
    ) / 3


def jaro_winkler_similarity(s1: str | None, s2: str | None) -> float:
    """
    Jaro-Winkler similarity.

    Adds a bonus for a common prefix of up to four characters, which
    suits person names where the leading characters discriminate most.

    >>> round(jaro_winkler_similarity("MARTHA", "MARHTA"), 3)
    0.961
    """
    if not s1 or not s2:
        return 0.0

    jaro = jaro_similarity(s1, s2)

    str1 = _prepare(s1)
    str2 = _prepare(s2)
    prefix_length = 0
    for a, b in zip(str1[:WINKLER_MAX_PREFIX], str2[:WINKLER_MAX_PREFIX]):
        if a != b:
            break
        prefix_length += 1

    return jaro + prefix_length * WINKLER_PREFIX_SCALE * (1 - jaro)
