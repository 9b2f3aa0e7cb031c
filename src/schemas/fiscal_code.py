"""Pydantic schemas for fiscal code (codice fiscale) parsing results."""

from __future__ import annotations

from datetime import date
from enum import Enum

from pydantic import BaseModel


class CfStatus(str, Enum):
    """Outcome tag of a fiscal code parse.

    OK and FOREIGN are both valid codes; FOREIGN marks a birthplace outside
    Italy (cadastral code starting with Z), which is rare but legitimate.
    """

    OK = "ok"
    FOREIGN = "foreign"
    MISSING = "missing"
    WRONG_LENGTH = "wrong_length"
    MALFORMED = "malformed"
    BAD_CHECKSUM = "bad_checksum"
    BIRTH_DATE_MISMATCH = "birth_date_mismatch"


class CfResult(BaseModel):
    """Decoded fiscal code, tagged with its parse status."""

    status: CfStatus
    codice_fiscale: str = ""
    normalized: str | None = None
    birth_date: date | None = None
    gender: str | None = None
    birthplace_code: str | None = None
    birthplace_name: str | None = None
    birthplace_province: str | None = None
    error: str | None = None

    @property
    def valid(self) -> bool:
        return self.status in (CfStatus.OK, CfStatus.FOREIGN)

    @property
    def is_foreign(self) -> bool:
        return self.status == CfStatus.FOREIGN
