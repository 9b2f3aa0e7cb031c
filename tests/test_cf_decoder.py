"""Tests for the Codice Fiscale engine.

Tests cover:
- Format and checksum validation
- Omocodia normalization
- Gender, birth date and century inference
- Birthplace lookup (Italian municipality and foreign state)
- Name/surname code generation and compound-name suggestion
- Tagged decode results and birth-date cross-check
"""

from __future__ import annotations

from datetime import date

import pytest

from src.decoders.codice_fiscale import (
    compute_check_char,
    decode,
    extract_birth_date,
    extract_birthplace_code,
    extract_gender,
    generate_name_code,
    generate_surname_code,
    normalize_omocodia,
    resolve_century,
    suggest_compound_name,
    validate_checksum,
    validate_format,
    validate_tax_code,
)
from src.schemas.fiscal_code import CfStatus

TODAY = date(2026, 10, 18)
NAMES = {"GIULIA": "F", "MARCO": "M", "MARIA": "F"}


class TestCfFormat:
    """Test CF format validation."""

    def test_valid_format(self) -> None:
        assert validate_format("RSSMRA85H52F205C") is True

    def test_lowercase_accepted(self) -> None:
        assert validate_format("rssmra85h52f205c") is True

    def test_omocodia_letters_accepted(self) -> None:
        assert validate_format("RSSMRAULALMHRLMD") is True

    def test_too_short(self) -> None:
        assert validate_format("RSSMRA85H52F20") is False

    def test_too_long(self) -> None:
        assert validate_format("RSSMRA85H52F205XY") is False

    def test_invalid_characters(self) -> None:
        assert validate_format("RSSMRA85H52F205!") is False

    def test_empty_and_none(self) -> None:
        assert validate_format("") is False
        assert validate_format(None) is False


class TestCfChecksum:
    """Test CF checksum validation."""

    def test_valid_checksum_female(self) -> None:
        # Maria Rossi, born 12 June 1985 in Milano (F205)
        assert validate_checksum("RSSMRA85H52F205C") is True

    def test_valid_checksum_male(self) -> None:
        # Marco Bianchi, born 15 March 1990 in Roma (H501)
        assert validate_checksum("BNCMRC90C15H501W") is True

    def test_invalid_checksum(self) -> None:
        assert validate_checksum("RSSMRA85H52F205A") is False

    def test_too_short_for_checksum(self) -> None:
        assert validate_checksum("RSSMRA85H52") is False

    def test_compute_check_char(self) -> None:
        assert compute_check_char("RSSMRA85H52F205") == "C"

    def test_checksum_on_omocode_as_written(self) -> None:
        assert validate_checksum("RSSMRA80A01H50MM") is True


class TestOmocodia:
    def test_single_substitution(self) -> None:
        assert normalize_omocodia("RSSMRA80A01H50MM") == "RSSMRA80A01H501M"

    def test_full_substitution(self) -> None:
        assert normalize_omocodia("RSSMRAULALMHRLMD") == "RSSMRA80A01H501D"

    def test_idempotent(self) -> None:
        once = normalize_omocodia("RSSMRAULALMHRLMD")
        assert normalize_omocodia(once) == once

    def test_plain_code_unchanged(self) -> None:
        assert normalize_omocodia("RSSMRA85H52F205C") == "RSSMRA85H52F205C"


class TestExtraction:
    def test_gender_female(self) -> None:
        assert extract_gender("RSSMRA85H52F205C") == "F"

    def test_gender_male(self) -> None:
        assert extract_gender("BNCMRC90C15H501W") == "M"

    def test_gender_malformed(self) -> None:
        assert extract_gender("nope") is None

    @pytest.mark.parametrize(
        ("day", "expected"),
        [(1, "M"), (40, "M"), (41, "F"), (71, "F"), (0, None), (72, None)],
    )
    def test_gender_day_boundaries(self, day: int, expected: str | None) -> None:
        first15 = f"RSSMRA85A{day:02d}F205"
        code = first15 + compute_check_char(first15)
        assert validate_checksum(code) is True
        assert extract_gender(code) == expected

    def test_birth_date_female_day_offset(self) -> None:
        assert extract_birth_date("RSSMRA85H52F205C", TODAY) == date(1985, 6, 12)

    def test_birth_date_omocode(self) -> None:
        assert extract_birth_date("RSSMRAULALMHRLMD", TODAY) == date(1980, 1, 1)

    def test_impossible_date(self) -> None:
        # 30 February
        assert extract_birth_date("RSSMRA85B30F205F", TODAY) is None

    def test_birthplace_code(self) -> None:
        assert extract_birthplace_code("RSSMRA80A01H50MM") == "H501"


class TestCentury:
    def test_past_century(self) -> None:
        assert resolve_century(85, TODAY) == 1985

    def test_current_century(self) -> None:
        assert resolve_century(10, TODAY) == 2010

    def test_boundary_is_current_century(self) -> None:
        assert resolve_century(26, TODAY) == 2026

    def test_just_after_boundary(self) -> None:
        assert resolve_century(27, TODAY) == 1927


class TestNameCodes:
    def test_surname(self) -> None:
        assert generate_surname_code("Rossi") == "RSS"

    def test_short_surname_padded(self) -> None:
        assert generate_surname_code("Fo") == "FOX"

    def test_name(self) -> None:
        assert generate_name_code("Mario") == "MRA"

    def test_name_with_four_consonants_skips_second(self) -> None:
        assert generate_name_code("Bianca Maria") == "BCM"

    def test_accents_and_apostrophes_ignored(self) -> None:
        assert generate_surname_code("D'Àmico") == generate_surname_code("Damico")


class TestCompoundName:
    def test_suggests_second_name(self) -> None:
        assert suggest_compound_name("BNCBCM90A41H501E", "Bianca", NAMES) == "Bianca Maria"

    def test_none_when_already_matching(self) -> None:
        assert suggest_compound_name("BNCBNC90A41H501J", "Bianca", NAMES) is None

    def test_other_gender_candidates_skipped(self) -> None:
        assert suggest_compound_name("BNCBCM90A41H501E", "Bianca", {"MARCO": "M"}) is None

    def test_invalid_code(self) -> None:
        assert suggest_compound_name("XXX", "Bianca", NAMES) is None


class TestDecode:
    def test_italian_birthplace(self) -> None:
        result = decode("RSSMRA85H52F205C", TODAY)
        assert result.status == CfStatus.OK
        assert result.valid is True
        assert result.gender == "F"
        assert result.birth_date == date(1985, 6, 12)
        assert result.birthplace_code == "F205"
        assert result.birthplace_name == "Milano"
        assert result.birthplace_province == "MI"

    def test_foreign_birthplace(self) -> None:
        result = decode("VRDGPP80A01Z404R", TODAY)
        assert result.status == CfStatus.FOREIGN
        assert result.valid is True
        assert result.is_foreign is True
        assert result.birthplace_name == "Stati Uniti"
        assert result.birthplace_province == "EE"

    def test_unknown_foreign_code_still_valid(self) -> None:
        result = decode("RSSMRA85H52Z999D", TODAY)
        assert result.status == CfStatus.FOREIGN
        assert result.birthplace_name is None
        assert result.birthplace_province == "EE"

    def test_omocode_decodes(self) -> None:
        result = decode("RSSMRA80A01H50MM", TODAY)
        assert result.valid is True
        assert result.normalized == "RSSMRA80A01H501M"
        assert result.birthplace_name == "Roma"

    def test_missing(self) -> None:
        assert decode(None).status == CfStatus.MISSING
        assert decode("   ").status == CfStatus.MISSING

    def test_wrong_length(self) -> None:
        assert decode("RSSMRA85H52").status == CfStatus.WRONG_LENGTH

    def test_malformed(self) -> None:
        assert decode("1234567890123456").status == CfStatus.MALFORMED

    def test_bad_checksum(self) -> None:
        result = decode("RSSMRA85H52F205A")
        assert result.status == CfStatus.BAD_CHECKSUM
        assert result.error == "Carattere di controllo non valido"

    def test_impossible_date_is_malformed(self) -> None:
        result = decode("RSSMRA85B30F205F", TODAY)
        assert result.status == CfStatus.MALFORMED
        assert result.valid is False


class TestValidateTaxCode:
    def test_matching_birth_date(self) -> None:
        assert validate_tax_code("RSSMRA85H52F205C", date(1985, 6, 12)).status == CfStatus.OK

    def test_mismatching_birth_date(self) -> None:
        result = validate_tax_code("RSSMRA85H52F205C", date(1985, 6, 13))
        assert result.status == CfStatus.BIRTH_DATE_MISMATCH
        assert result.valid is False

    def test_century_agnostic(self) -> None:
        assert validate_tax_code("RSSMRA85H52F205C", date(1885, 6, 12)).status == CfStatus.OK

    def test_without_birth_date(self) -> None:
        assert validate_tax_code("BNCMRC90C15H501W").valid is True
