"""Profile form validation and save.

The member form is strict (every AICS field and both consents). The admin
edit is lenient: only the names are required, but anything that is given
must still be well formed, and a fiscal code must match the birth date.
Either way a valid fiscal code wins over the declared gender.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from src.admin.events import emit
from src.decoders.codice_fiscale import decode, extract_gender, validate_tax_code
from src.decoders.comuni import get_official_comune_name, is_valid_comune
from src.models.user import Profile
from src.schemas.events import EventType, SystemEvent
from src.schemas.profile import ProfileUpdate

logger = logging.getLogger(__name__)

MIN_AGE = 16
MAX_AGE = 120

ERR_FIRST_NAME_SHORT = "Il nome deve contenere almeno 2 caratteri"
ERR_FIRST_NAME_REQUIRED = "Il nome è obbligatorio"
ERR_LAST_NAME_SHORT = "Il cognome deve contenere almeno 2 caratteri"
ERR_LAST_NAME_REQUIRED = "Il cognome è obbligatorio"
ERR_TOO_LONG = "Valore troppo lungo"
ERR_BIRTH_DATE_REQUIRED = "La data di nascita è obbligatoria"
ERR_AGE = f"Devi avere almeno {MIN_AGE} anni"
ERR_GENDER = "Il sesso deve essere M o F"
ERR_ADDRESS = "L'indirizzo deve contenere almeno 5 caratteri"
ERR_CITY = "Il comune deve contenere almeno 2 caratteri"
ERR_COMUNE = "Comune non trovato nella provincia indicata"
ERR_POSTAL_CODE = "Il CAP deve essere di 5 cifre"
ERR_PROVINCE = "La provincia deve essere di 2 lettere (es. MI, RM)"
ERR_PRIVACY = "Devi accettare l'informativa sulla privacy"
ERR_DATA_CONSENT = "Devi acconsentire al trattamento dei dati"

_POSTAL_CODE = re.compile(r"^\d{5}$")
_PROVINCE = re.compile(r"^[A-Z]{2}$")

# Fields AICS needs before a membership can be paid for
_AICS_FIELDS = (
    "first_name",
    "last_name",
    "birth_date",
    "nationality",
    "birth_province",
    "birth_city",
    "address",
    "city",
    "postal_code",
    "province",
)

_MAX_LENGTHS = {
    "first_name": 50,
    "last_name": 50,
    "nationality": 50,
    "birth_city": 100,
    "birth_province": 2,
    "address": 200,
    "city": 100,
    "postal_code": 10,
    "province": 2,
    "phone": 30,
    "document_type": 50,
    "document_number": 50,
}


@dataclass
class ProfileSaveResult:
    profile: Profile | None = None
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.errors


def _age(birth_date: date, today: date) -> int:
    return today.year - birth_date.year


def _check_names(form: ProfileUpdate, errors: dict[str, str], strict: bool) -> None:
    min_len = 2 if strict else 1
    if len(form.first_name) < min_len:
        errors["first_name"] = ERR_FIRST_NAME_SHORT if strict else ERR_FIRST_NAME_REQUIRED
    if len(form.last_name) < min_len:
        errors["last_name"] = ERR_LAST_NAME_SHORT if strict else ERR_LAST_NAME_REQUIRED


def _check_residence(form: ProfileUpdate, errors: dict[str, str], strict: bool) -> None:
    if strict or form.address:
        if len(form.address) < 5:
            errors["address"] = ERR_ADDRESS
    if strict or form.city:
        if len(form.city) < 2:
            errors["city"] = ERR_CITY
    if strict or form.postal_code:
        # foreign addresses carry their own postal code format
        if form.country in ("", "IT") and not _POSTAL_CODE.match(form.postal_code):
            errors["postal_code"] = ERR_POSTAL_CODE
    if strict or form.province:
        if not _PROVINCE.match(form.province):
            errors["province"] = ERR_PROVINCE

    italian = form.country in ("", "IT")
    if italian and form.city and "city" not in errors and "province" not in errors and form.province:
        if not is_valid_comune(form.city, form.province):
            errors["city"] = ERR_COMUNE


def validate_profile(form: ProfileUpdate, *, strict: bool = True, today: date | None = None) -> dict[str, str]:
    """Per-field Italian error messages; empty when the form can be saved."""
    today = today or date.today()
    errors: dict[str, str] = {}

    _check_names(form, errors, strict)

    if form.birth_date is None:
        if strict:
            errors["birth_date"] = ERR_BIRTH_DATE_REQUIRED
    elif not MIN_AGE <= _age(form.birth_date, today) <= MAX_AGE:
        errors["birth_date"] = ERR_AGE

    if form.tax_code:
        result = validate_tax_code(form.tax_code, form.birth_date)
        if not result.valid:
            errors["tax_code"] = result.error or "Codice fiscale non valido"

    if form.gender and form.gender not in ("M", "F"):
        errors["gender"] = ERR_GENDER

    _check_residence(form, errors, strict)

    if strict:
        if not form.privacy_consent:
            errors["privacy_consent"] = ERR_PRIVACY
        if not form.data_consent:
            errors["data_consent"] = ERR_DATA_CONSENT

    for name, limit in _MAX_LENGTHS.items():
        if name not in errors and len(getattr(form, name)) > limit:
            errors[name] = ERR_TOO_LONG

    return errors


def aics_complete(profile: Any) -> bool:
    """Every field AICS registers is present and both consents are given."""
    if not all(getattr(profile, name, None) for name in _AICS_FIELDS):
        return False
    return bool(profile.privacy_consent) and bool(profile.data_consent)


def _or_none(value: str) -> str | None:
    return value or None


def apply_form(profile: Profile, form: ProfileUpdate) -> None:
    """Copy a validated form onto the profile, filling what the fiscal code tells."""
    tax_code = _or_none(form.tax_code)
    birth_city = form.birth_city
    birth_province = form.birth_province
    if tax_code:
        decoded = decode(tax_code)
        if decoded.valid:
            birth_city = birth_city or (decoded.birthplace_name or "")
            birth_province = birth_province or (decoded.birthplace_province or "")

    country = form.country or "IT"
    city = form.city
    if country == "IT" and city and form.province:
        city = get_official_comune_name(city, form.province) or city

    profile.first_name = _or_none(form.first_name)
    profile.last_name = _or_none(form.last_name)
    profile.birth_date = form.birth_date
    profile.tax_code = tax_code
    profile.gender = (extract_gender(tax_code) if tax_code else None) or _or_none(form.gender)
    profile.nationality = _or_none(form.nationality)
    profile.birth_city = _or_none(birth_city)
    profile.birth_province = _or_none(birth_province)
    profile.has_foreign_tax_code = form.has_foreign_tax_code
    profile.address = _or_none(form.address)
    profile.city = _or_none(city)
    profile.postal_code = _or_none(form.postal_code)
    profile.province = _or_none(form.province)
    profile.country = country
    profile.document_type = _or_none(form.document_type)
    profile.document_number = _or_none(form.document_number)
    profile.privacy_consent = form.privacy_consent
    profile.data_consent = form.data_consent
    profile.profile_complete = aics_complete(profile)


async def save_profile(
    db: AsyncSession,
    user: Any,
    form: ProfileUpdate,
    *,
    actor_id: str,
    strict: bool = True,
) -> ProfileSaveResult:
    """Validate and upsert the user's profile. `user.profile` must be loaded."""
    errors = validate_profile(form, strict=strict)
    if errors:
        logger.info("Profile form for user %s rejected: %s", user.id, ", ".join(sorted(errors)))
        return ProfileSaveResult(errors=errors)

    profile = user.profile
    created = profile is None
    if created:
        profile = Profile(user_id=user.id)
        db.add(profile)
        user.profile = profile
    apply_form(profile, form)
    if form.phone:
        user.phone = form.phone
    await db.flush()

    await emit(SystemEvent(
        event_type=EventType.PROFILE_UPDATED,
        user_id=user.id,
        actor_id=actor_id,
        actor_role="user" if actor_id == str(user.id) else "admin",
        data={"created": created, "profile_complete": profile.profile_complete},
        source_module="membership.profile",
    ))
    logger.info(
        "Profile of user %s %s by %s (complete=%s)",
        user.id,
        "created" if created else "updated",
        actor_id,
        profile.profile_complete,
    )
    return ProfileSaveResult(profile=profile)
