"""Italian Codice Fiscale (CF) engine.

Pure Python, no DB. Validates, decodes and partially generates the
16-character Italian tax code.

CF format: AAABBB 00C00 D000 E
  - AAA:  surname consonants (then vowels, then X)
  - BBB:  name consonants (then vowels, then X; 1st/3rd/4th consonant if 4+)
  - 00:   year of birth (last 2 digits)
  - C:    month of birth (letter A–T, non-sequential)
  - 00:   day of birth (1–31 male, 41–71 female)
  - D000: birthplace code (codice catastale / Belfiore; Z = foreign state)
  - E:    check character

Omocodia: when two people would get the same code, digits at the seven
numeric positions are replaced right-to-left by the letters LMNPQRSTUV.

Reference: DPR 605/1973, Decreto MEF 12/03/1974.
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Mapping
from datetime import date

from src.decoders.comuni import find_comune_by_catastale
from src.schemas.fiscal_code import CfResult, CfStatus

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_OMO = "[0-9LMNPQRSTUV]"
_CF_PATTERN = re.compile(rf"^[A-Z]{{6}}{_OMO}{{2}}[A-Z]{_OMO}{{2}}[A-Z]{_OMO}{{3}}[A-Z]$")

OMOCODIA_REVERSE: dict[str, str] = {
    "L": "0", "M": "1", "N": "2", "P": "3", "Q": "4",
    "R": "5", "S": "6", "T": "7", "U": "8", "V": "9",
}
OMOCODIA_POSITIONS: tuple[int, ...] = (6, 7, 9, 10, 12, 13, 14)

MONTH_MAP: dict[str, int] = {
    "A": 1, "B": 2, "C": 3, "D": 4, "E": 5, "H": 6,
    "L": 7, "M": 8, "P": 9, "R": 10, "S": 11, "T": 12,
}

# Checksum tables per Decreto MEF 12/03/1974
ODD_VALUES: dict[str, int] = {
    "0": 1, "1": 0, "2": 5, "3": 7, "4": 9, "5": 13, "6": 15,
    "7": 17, "8": 19, "9": 21,
    "A": 1, "B": 0, "C": 5, "D": 7, "E": 9, "F": 13, "G": 15,
    "H": 17, "I": 19, "J": 21, "K": 2, "L": 4, "M": 18, "N": 20,
    "O": 11, "P": 3, "Q": 6, "R": 8, "S": 12, "T": 14, "U": 16,
    "V": 10, "W": 22, "X": 25, "Y": 24, "Z": 23,
}

EVEN_VALUES: dict[str, int] = {
    **{str(d): d for d in range(10)},
    **{chr(65 + i): i for i in range(26)},
}

_VOWELS = "AEIOU"

# Italian error messages shown on the profile form
ERR_MISSING = "Codice fiscale non fornito"
ERR_LENGTH = "Il codice fiscale deve essere di 16 caratteri"
ERR_FORMAT = "Formato codice fiscale non valido"
ERR_CHECKSUM = "Carattere di controllo non valido"
ERR_BIRTH_DATE = "La data di nascita non corrisponde al codice fiscale"
ERR_DATE = "Data di nascita non valida nel codice fiscale"


def _clean(code: str | None) -> str:
    return (code or "").strip().upper()


def _letters(text: str) -> str:
    """Upper-case ASCII letters only (accents folded, spaces and apostrophes dropped)."""
    folded = unicodedata.normalize("NFD", text.upper())
    return "".join(ch for ch in folded if "A" <= ch <= "Z")


# ---------------------------------------------------------------------------
# Structure
# ---------------------------------------------------------------------------


def validate_format(code: str | None) -> bool:
    """Check the positional grammar, omocodia letters included."""
    return bool(_CF_PATTERN.match(_clean(code)))


def normalize_omocodia(code: str) -> str:
    """Map omocodia letters back to digits at the seven numeric positions.

    Idempotent. Characters at other positions are left untouched.
    """
    chars = list(_clean(code))
    for pos in OMOCODIA_POSITIONS:
        if pos < len(chars) and chars[pos] in OMOCODIA_REVERSE:
            chars[pos] = OMOCODIA_REVERSE[chars[pos]]
    return "".join(chars)


def compute_check_char(first15: str) -> str:
    """Check character for the first 15 characters of a code."""
    total = 0
    for i, char in enumerate(_clean(first15)[:15]):
        # i is 0-indexed, so even i is an odd 1-indexed position
        total += ODD_VALUES.get(char, 0) if i % 2 == 0 else EVEN_VALUES.get(char, 0)
    return chr(65 + total % 26)


def validate_checksum(code: str | None) -> bool:
    """Validate the 16th character. Computed on the code as written."""
    cf = _clean(code)
    if len(cf) != 16:
        return False
    return cf[15] == compute_check_char(cf)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def extract_gender(code: str | None) -> str | None:
    """M for day 1–40, F for 41–71, None when malformed or out of range."""
    if not validate_format(code):
        return None
    day = int(normalize_omocodia(code or "")[9:11])
    if 1 <= day <= 40:
        return "M"
    if 41 <= day <= 71:
        return "F"
    return None


def resolve_century(two_digit_year: int, today: date | None = None) -> int:
    """Two-digit year ≤ current two-digit year → 20xx, otherwise 19xx.

    Codes of people over 100 are resolved a century late.
    """
    today = today or date.today()
    if two_digit_year <= today.year % 100:
        return 2000 + two_digit_year
    return 1900 + two_digit_year


def extract_birth_date(code: str | None, today: date | None = None) -> date | None:
    """Birth date encoded in the code, or None if malformed or impossible."""
    if not validate_format(code):
        return None
    cf = normalize_omocodia(code or "")
    month = MONTH_MAP.get(cf[8])
    if month is None:
        return None
    day = int(cf[9:11])
    if day > 40:
        day -= 40
    year = resolve_century(int(cf[6:8]), today)
    try:
        return date(year, month, day)
    except ValueError:
        return None


def extract_birthplace_code(code: str | None) -> str | None:
    """Cadastral code (positions 11–14) of the normalized code."""
    if not validate_format(code):
        return None
    return normalize_omocodia(code or "")[11:15]


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


def _consonants(text: str) -> str:
    return "".join(ch for ch in _letters(text) if ch not in _VOWELS)


def _vowels(text: str) -> str:
    return "".join(ch for ch in _letters(text) if ch in _VOWELS)


def generate_surname_code(surname: str) -> str:
    """Consonants, then vowels, then X padding; first three characters."""
    return (_consonants(surname) + _vowels(surname) + "XXX")[:3]


def generate_name_code(name: str) -> str:
    """Like the surname code, but with 4+ consonants the 2nd is skipped."""
    consonants = _consonants(name)
    if len(consonants) >= 4:
        return consonants[0] + consonants[2] + consonants[3]
    return (consonants + _vowels(name) + "XXX")[:3]


def suggest_compound_name(
    code: str,
    first_name: str,
    names_db: Mapping[str, str],
) -> str | None:
    """Find a second given name that makes `first_name` match the code.

    `names_db` maps upper-case names to "M"/"F". Candidates of the other
    gender (as encoded in the code) are skipped. Returns the compound name
    capitalized ("Bianca Maria"), or None if the name already matches or no
    candidate fits.
    """
    cf = _clean(code)
    if not first_name or not validate_format(cf):
        return None
    target = cf[3:6]
    if generate_name_code(first_name) == target:
        return None

    gender = extract_gender(cf)
    first_upper = first_name.strip().upper()
    for candidate, candidate_gender in names_db.items():
        if gender and candidate_gender != gender:
            continue
        if candidate.upper() == first_upper:
            continue
        if generate_name_code(f"{first_name} {candidate}") == target:
            return f"{first_name.strip().capitalize()} {candidate.capitalize()}"
    return None


# ---------------------------------------------------------------------------
# Tagged decode
# ---------------------------------------------------------------------------


def decode(code: str | None, today: date | None = None) -> CfResult:
    """Validate and decode a fiscal code into a tagged CfResult."""
    cf = _clean(code)
    if not cf:
        return CfResult(status=CfStatus.MISSING, error=ERR_MISSING)
    if len(cf) != 16:
        return CfResult(status=CfStatus.WRONG_LENGTH, codice_fiscale=cf, error=ERR_LENGTH)
    if not validate_format(cf):
        return CfResult(status=CfStatus.MALFORMED, codice_fiscale=cf, error=ERR_FORMAT)
    if not validate_checksum(cf):
        return CfResult(status=CfStatus.BAD_CHECKSUM, codice_fiscale=cf, error=ERR_CHECKSUM)

    normalized = normalize_omocodia(cf)
    birth_date = extract_birth_date(cf, today)
    gender = extract_gender(cf)
    if birth_date is None or gender is None:
        return CfResult(
            status=CfStatus.MALFORMED,
            codice_fiscale=cf,
            normalized=normalized,
            error=ERR_DATE,
        )

    place_code = normalized[11:15]
    comune = find_comune_by_catastale(place_code)
    return CfResult(
        status=CfStatus.FOREIGN if place_code.startswith("Z") else CfStatus.OK,
        codice_fiscale=cf,
        normalized=normalized,
        birth_date=birth_date,
        gender=gender,
        birthplace_code=place_code,
        birthplace_name=comune.comune if comune else None,
        birthplace_province=comune.provincia_code if comune else ("EE" if place_code.startswith("Z") else None),
    )


def validate_tax_code(code: str | None, birth_date: date | None = None) -> CfResult:
    """Profile-form validation: decode, then cross-check the declared birth date."""
    result = decode(code)
    if not result.valid or birth_date is None or result.birth_date is None:
        return result
    # Century-agnostic: the code only carries two year digits
    encoded = (result.birth_date.year % 100, result.birth_date.month, result.birth_date.day)
    declared = (birth_date.year % 100, birth_date.month, birth_date.day)
    if encoded != declared:
        return result.model_copy(update={"status": CfStatus.BIRTH_DATE_MISMATCH, "error": ERR_BIRTH_DATE})
    return result
