"""
Blocking

Narrows the candidate population before similarity scoring. A record is
pulled back only when it shares at least one coarse indexed key with the
query (OR across keys), always within one tenant.
"""

from dataclasses import dataclass, field

from patient_mpi.models import IdentityRecord, MatchSearchCriteria, MPISearchOptions
from patient_mpi.normalize import normalize_phone
from patient_mpi.phonetic import soundex

# Identity record columns usable as blocking keys
LAST_NAME_SOUNDEX = "last_name_soundex"
DATE_OF_BIRTH = "date_of_birth"
PHONE = "phone_normalized"
MRN = "mrn"

BLOCKING_COLUMNS = (LAST_NAME_SOUNDEX, DATE_OF_BIRTH, PHONE, MRN)


@dataclass(frozen=True)
class BlockingFilter:
    """
    Store-agnostic description of a blocking query.

    ``keys`` holds (column, value) equality conditions joined by OR.
    An empty ``keys`` tuple means no blocking: every record in the tenant
    qualifies, still bounded by ``limit``.
    """
    tenant_id: str
    keys: tuple[tuple[str, str], ...] = field(default_factory=tuple)
    include_inactive: bool = False
    limit: int = 100
    offset: int = 0

    def matches(self, record: IdentityRecord) -> bool:
        """Reference predicate, evaluated row by row by in-memory stores."""
        if record.tenant_id != self.tenant_id:
            return False
        if not self.include_inactive and not record.is_active:
            return False
        if not self.keys:
            return True
        return any(getattr(record, column) == value for column, value in self.keys)

    def keys_hit(self, record: IdentityRecord) -> list[str]:
        """Blocking columns this record shares with the query."""
        return [column for column, value in self.keys if getattr(record, column) == value]


def build_blocking_filter(
    criteria: MatchSearchCriteria,
    options: MPISearchOptions,
    use_soundex: bool = True,
) -> BlockingFilter:
    """Blocking keys present in ``criteria``; Soundex(last name) only when ``use_soundex``."""
    keys: list[tuple[str, str]] = []

    if use_soundex and criteria.last_name:
        last_name_soundex = soundex(criteria.last_name)
        if last_name_soundex:
            keys.append((LAST_NAME_SOUNDEX, last_name_soundex))

    if criteria.date_of_birth:
        keys.append((DATE_OF_BIRTH, criteria.date_of_birth))

    if criteria.phone:
        phone = normalize_phone(criteria.phone)
        if phone:
            keys.append((PHONE, phone))

    if criteria.mrn:
        keys.append((MRN, criteria.mrn))

    return BlockingFilter(
        tenant_id=options.tenant_id,
        keys=tuple(keys),
        include_inactive=options.include_inactive,
        limit=options.limit,
        offset=options.offset,
    )


def blocking_key_label(filter_: BlockingFilter, record: IdentityRecord) -> str | None:
    """Compact label of the keys that pulled ``record`` in, e.g. 'date_of_birth+mrn'."""
    hit = filter_.keys_hit(record)
    return "+".join(hit) if hit else None
