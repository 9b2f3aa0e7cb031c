"""Pydantic schemas for the member profile form."""

from __future__ import annotations

from datetime import date

from pydantic import BaseModel, ConfigDict, field_validator


class ProfileUpdate(BaseModel):
    """Profile form as submitted. Blank strings mean "not given"."""

    model_config = ConfigDict(str_strip_whitespace=True)

    first_name: str = ""
    last_name: str = ""
    birth_date: date | None = None
    tax_code: str = ""
    gender: str = ""
    nationality: str = ""
    birth_city: str = ""
    birth_province: str = ""
    has_foreign_tax_code: bool = False
    address: str = ""
    city: str = ""
    postal_code: str = ""
    province: str = ""
    country: str = "IT"
    phone: str = ""
    document_type: str = ""
    document_number: str = ""
    privacy_consent: bool = False
    data_consent: bool = False

    @field_validator("birth_date", mode="before")
    @classmethod
    def _blank_date(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("tax_code", "gender", "nationality", "birth_province", "province", "country")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()


class ProfileResponse(BaseModel):
    """Saved profile plus the membership state it leads to."""

    model_config = ConfigDict(from_attributes=True)

    first_name: str | None = None
    last_name: str | None = None
    birth_date: date | None = None
    tax_code: str | None = None
    gender: str | None = None
    nationality: str | None = None
    birth_city: str | None = None
    birth_province: str | None = None
    has_foreign_tax_code: bool = False
    address: str | None = None
    city: str | None = None
    postal_code: str | None = None
    province: str | None = None
    country: str | None = None
    document_type: str | None = None
    document_number: str | None = None
    privacy_consent: bool = False
    data_consent: bool = False
    profile_complete: bool = False
