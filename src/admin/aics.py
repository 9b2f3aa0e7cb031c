"""AICS registry export.

Produces the workbook the AICS import tool expects, column for column:
row 1 holds merged category headers, row 2 the column headers, data starts
at row 3. Members that cannot be registered are not dropped silently: they
go to a second sheet with the reason.

Two independent checks per member:
  - inclusion: a numbered, ACTIVE membership, otherwise the member is excluded;
  - residence: city/province/CAP must validate together against the
    municipality database, otherwise the whole residence block is cleared.
"""

from __future__ import annotations

import io
import logging
import re
from collections.abc import Sequence
from dataclasses import astuple, dataclass, field
from datetime import date, datetime

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side

from src.decoders.codice_fiscale import extract_gender, normalize_omocodia, validate_format
from src.decoders.comuni import (
    FOREIGN_PROVINCE,
    city_from_cap,
    find_comune_by_catastale,
    get_capoluogo,
    get_official_comune_name,
    is_province_code,
    is_valid_comune,
    province_from_cap,
    search_comuni,
)
from src.models.enums import MembershipStatus
from src.models.user import User

logger = logging.getLogger(__name__)

QUALIFICA_SOCIALE = "SO"
ATTIVITA_SOCIALE = "C0001"
NAME_MAX = 50
PLACE_MAX = 65

REASON_NO_MEMBERSHIP = "Nessuna membership"
REASON_NO_NUMBER = "Numero tessera non assegnato"
STATUS_REASONS = {
    MembershipStatus.PENDING.value: "Stato: In attesa",
    MembershipStatus.EXPIRED.value: "Stato: Scaduta",
    MembershipStatus.CANCELED.value: "Stato: Cancellata",
}

# (first column, last column, label) for the merged row 1
CATEGORIES = (
    ("A", "B", "NOMINATIVO"),
    ("C", "G", "DATI DI NASCITA"),
    ("H", "K", "DATI DI RESIDENZA/DOMICILIO"),
    ("L", "M", "RECAPITI ABITAZIONE"),
    ("N", "O", "RECAPITI UFFICIO"),
    ("P", "Q", "ALTRI RECAPITI"),
    ("R", "S", "INQUADRAMENTO SOCIALE"),
    ("T", "U", "INQUADRAMENTO SPORTIVO"),
    ("V", "X", "CERTIFICATO MEDICO"),
    ("Y", "Z", "TESSERA"),
)

COLUMN_HEADERS = (
    "COGNOME", "NOME", "SESSO", "DATA", "PROVINCIA", "COMUNE", "CODICE FISCALE",
    "INDIRIZZO", "CAP", "PROVINCIA", "COMUNE",
    "TELEFONO", "FAX", "TELEFONO", "FAX", "CELLULARE", "EMAIL",
    "QUALIFICA", "ATTIVITÀ", "QUALIFICA", "ATTIVITÀ",
    "TIPO", "DATA RILASCIO", "DATA SCADENZA", "NUMERO", "DATA RILASCIO",
)

COLUMN_WIDTHS = (20, 20, 8, 12, 12, 25, 20, 30, 10, 12, 20, 15, 12, 15, 12, 15, 30, 12, 12, 12, 12, 10, 14, 14, 15, 14)

EXCLUDED_HEADERS = ("Email", "Nome", "Cognome", "Codice fiscale", "Motivo esclusione")

_THIN = Side(style="thin")
_BORDER = Border(top=_THIN, bottom=_THIN, left=_THIN, right=_THIN)
_GREY = PatternFill(fill_type="solid", fgColor="FFE0E0E0")
_RED = PatternFill(fill_type="solid", fgColor="FFDC2626")
_LIGHT_RED = PatternFill(fill_type="solid", fgColor="FFFEE2E2")
_CENTER = Alignment(horizontal="center", vertical="center")


@dataclass
class ResidenceFix:
    """Residence block after normalization. All four fields empty when invalid."""

    address: str = ""
    city: str = ""
    province: str = ""
    cap: str = ""
    corrections: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.city and self.province)


@dataclass
class AicsRow:
    """One member in AICS column order (A..Z)."""

    cognome: str
    nome: str
    sesso: str
    data_nascita: str
    provincia_nascita: str
    comune_nascita: str
    codice_fiscale: str
    indirizzo: str
    cap: str
    provincia: str
    comune: str
    telefono_abitazione: str = ""
    fax_abitazione: str = ""
    telefono_ufficio: str = ""
    fax_ufficio: str = ""
    cellulare: str = ""
    email: str = ""
    qualifica_sociale: str = QUALIFICA_SOCIALE
    attivita_sociale: str = ATTIVITA_SOCIALE
    qualifica_sportiva: str = ""
    attivita_sportiva: str = ""
    tipo_certificato: str = ""
    data_rilascio_cert: str = ""
    data_scadenza_cert: str = ""
    numero_tessera: str = ""
    data_rilascio_tessera: str = ""

    def values(self) -> list[str]:
        return list(astuple(self))


@dataclass
class Exclusion:
    email: str
    first_name: str
    last_name: str
    tax_code: str
    reasons: list[str]

    @property
    def reason(self) -> str:
        return "; ".join(self.reasons)


@dataclass
class AicsExport:
    """Export result: included rows and excluded members with reasons."""

    rows: list[AicsRow] = field(default_factory=list)
    exclusions: list[Exclusion] = field(default_factory=list)


# ── Field helpers ────────────────────────────────────────────────────


def truncate(value: str | None, limit: int) -> str:
    return (value or "")[:limit]


def format_date_it(value: date | datetime | None) -> str:
    return value.strftime("%d/%m/%Y") if value else ""


def normalize_phone(phone: str | None) -> str:
    """Digits only, Italian +39 prefix dropped, at most 12 characters."""
    if not phone:
        return ""
    digits = re.sub(r"\D", "", phone)
    if digits.startswith("39") and len(digits) > 10:
        digits = digits[2:]
    return digits[:12]


def birthplace_from_cf(tax_code: str | None) -> tuple[str | None, str | None]:
    """(comune, province) encoded in the fiscal code.

    Only the format is required here, not the checksum: the cadastral code
    is still meaningful on a code with a typo in the last character.
    """
    if not tax_code or not validate_format(tax_code):
        return None, None
    place = normalize_omocodia(tax_code.strip().upper())[11:15]
    comune = find_comune_by_catastale(place)
    if comune is not None:
        return comune.comune, comune.provincia_code
    if place.startswith("Z"):
        return None, FOREIGN_PROVINCE
    return None, None


def official_foreign_name(name: str) -> str:
    """Map a stored country name to its registry spelling when unambiguous."""
    official = get_official_comune_name(name, FOREIGN_PROVINCE)
    if official:
        return official
    matches = search_comuni(name, FOREIGN_PROVINCE, limit=2)
    return matches[0].comune if len(matches) == 1 else name


def fix_residence_data(
    address: str | None,
    city: str | None,
    province: str | None,
    cap: str | None,
) -> ResidenceFix:
    """Normalize the residence block, or clear it entirely.

    1. Nothing provided → empty.
    2. CAP decides the province.
    3. A province code typed as city → city from CAP, else capoluogo.
    4. Missing city with a province → city from CAP, else capoluogo.
    5. City name normalized to the official spelling.
    6. Pair not found in the municipality database → cleared.
    7. City and province both required, otherwise cleared.
    """
    address_val = (address or "").strip()
    city_val = (city or "").strip()
    province_val = (province or "").strip().upper()
    cap_val = (cap or "").strip()
    corrections: list[str] = []

    def cleared(note: str | None = None) -> ResidenceFix:
        if note:
            corrections.append(note)
        return ResidenceFix(corrections=corrections)

    if not city_val and not province_val and not cap_val:
        return ResidenceFix()

    derived = province_from_cap(cap_val)
    if derived:
        if province_val and province_val != derived:
            corrections.append(f'Provincia corretta da "{province_val}" a "{derived}" (da CAP {cap_val})')
        province_val = derived

    if is_province_code(city_val):
        from_cap = city_from_cap(cap_val, province_val) if cap_val else None
        capoluogo = get_capoluogo(province_val)
        if from_cap:
            corrections.append(f'Comune "{city_val}" era codice provincia, derivato da CAP: {from_cap}')
            city_val = from_cap
        elif capoluogo:
            corrections.append(f'Comune "{city_val}" era codice provincia, usato capoluogo: {capoluogo}')
            city_val = capoluogo
        else:
            return cleared(f'Comune "{city_val}" è codice provincia, impossibile correggere - rimosso')

    if not city_val and province_val:
        from_cap = city_from_cap(cap_val, province_val) if cap_val else None
        capoluogo = get_capoluogo(province_val)
        if from_cap:
            corrections.append(f"Comune mancante, derivato da CAP: {from_cap}")
            city_val = from_cap
        elif capoluogo:
            corrections.append(f"Comune mancante, usato capoluogo: {capoluogo}")
            city_val = capoluogo
        else:
            return cleared(f'Provincia "{province_val}" senza comune valido - rimosso')

    if city_val and province_val:
        official = get_official_comune_name(city_val, province_val)
        if official and official != city_val:
            corrections.append(f'Comune normalizzato: "{city_val}" → "{official}"')
            city_val = official

    if city_val and province_val and province_val != FOREIGN_PROVINCE:
        if not is_valid_comune(city_val, province_val):
            return cleared(f'Comune "{city_val}" non valido per provincia "{province_val}" - rimosso')

    if not city_val or not province_val:
        return cleared("Dati residenza incompleti - rimosso" if city_val or province_val else None)

    return ResidenceFix(
        address=address_val,
        city=city_val,
        province=province_val,
        cap=cap_val,
        corrections=corrections,
    )


# ── Rows ─────────────────────────────────────────────────────────────


def exclusion_reasons(user: User) -> list[str]:
    membership = user.current_membership
    if membership is None:
        return [REASON_NO_MEMBERSHIP]
    reasons = []
    if not membership.membership_number:
        reasons.append(REASON_NO_NUMBER)
    if membership.status != MembershipStatus.ACTIVE.value:
        reasons.append(STATUS_REASONS.get(membership.status, f"Stato: {membership.status}"))
    return reasons


def build_aics_row(user: User, today: date | None = None) -> AicsRow | Exclusion:
    profile = user.profile
    reasons = exclusion_reasons(user)
    if reasons:
        return Exclusion(
            email=user.email,
            first_name=(profile.first_name if profile else None) or "",
            last_name=(profile.last_name if profile else None) or "",
            tax_code=(profile.tax_code if profile else None) or "",
            reasons=reasons,
        )

    membership = user.current_membership
    nationality = profile.nationality if profile else None
    is_italian = not nationality or nationality == "IT"
    has_foreign_cf = bool(profile and profile.has_foreign_tax_code)
    tax_code = ((profile.tax_code if profile else None) or "").strip().upper() if is_italian or has_foreign_cf else ""

    gender = (extract_gender(tax_code) if tax_code else None) or (profile.gender if profile else None) or ""

    birth_city = (profile.birth_city if profile else None) or ""
    birth_province = (profile.birth_province if profile else None) or ""
    cf_city, cf_province = birthplace_from_cf(tax_code)
    if cf_city and cf_province:
        if (birth_city, birth_province) != (cf_city, cf_province):
            logger.info("Birth place of %s taken from fiscal code", user.id)
        birth_city, birth_province = cf_city, cf_province
    elif cf_province == FOREIGN_PROVINCE:
        birth_province = FOREIGN_PROVINCE
    if birth_province == FOREIGN_PROVINCE and birth_city:
        birth_city = official_foreign_name(birth_city)

    residence = fix_residence_data(
        profile.address if profile else None,
        profile.city if profile else None,
        profile.province if profile else None,
        profile.postal_code if profile else None,
    )
    if residence.corrections:
        logger.info("Residence of %s adjusted: %s", user.id, "; ".join(residence.corrections))

    assigned = membership.card_assigned_at if membership else None
    return AicsRow(
        cognome=truncate(profile.last_name if profile else None, NAME_MAX),
        nome=truncate(profile.first_name if profile else None, NAME_MAX),
        sesso=gender,
        data_nascita=format_date_it(profile.birth_date if profile else None),
        provincia_nascita=birth_province,
        comune_nascita=truncate(birth_city, PLACE_MAX),
        codice_fiscale=tax_code,
        indirizzo=truncate(residence.address, NAME_MAX),
        cap=residence.cap,
        provincia=residence.province,
        comune=truncate(residence.city, PLACE_MAX),
        cellulare=normalize_phone(user.phone),
        email=truncate(user.email, NAME_MAX),
        numero_tessera=membership.membership_number or "",
        data_rilascio_tessera=format_date_it(assigned or today or date.today()),
    )


def build_aics_export(users: Sequence[User], today: date | None = None) -> AicsExport:
    export = AicsExport()
    for user in users:
        item = build_aics_row(user, today)
        if isinstance(item, Exclusion):
            export.exclusions.append(item)
        else:
            export.rows.append(item)
    logger.info("AICS export: %d included, %d excluded", len(export.rows), len(export.exclusions))
    return export


# ── Workbook ─────────────────────────────────────────────────────────


def build_aics_workbook(rows: Sequence[AicsRow], exclusions: Sequence[Exclusion]) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Soci AICS"

    for first, last, label in CATEGORIES:
        ws.merge_cells(f"{first}1:{last}1")
        cell = ws[f"{first}1"]
        cell.value = label
        cell.font = Font(bold=True)
        cell.fill = _GREY
        cell.alignment = _CENTER
        cell.border = _BORDER

    for index, header in enumerate(COLUMN_HEADERS, start=1):
        cell = ws.cell(row=2, column=index, value=header)
        cell.font = Font(bold=True)
        cell.alignment = _CENTER
        cell.border = _BORDER

    for offset, row in enumerate(rows):
        for index, value in enumerate(row.values(), start=1):
            ws.cell(row=offset + 3, column=index, value=value)

    for index, width in enumerate(COLUMN_WIDTHS, start=1):
        ws.column_dimensions[ws.cell(row=2, column=index).column_letter].width = width
    if rows:
        ws.auto_filter.ref = f"A2:Z{len(rows) + 2}"
    ws.freeze_panes = "A3"

    if exclusions:
        _add_exclusions_sheet(wb, exclusions)

    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def _add_exclusions_sheet(wb: Workbook, exclusions: Sequence[Exclusion]) -> None:
    ws = wb.create_sheet("Esclusi")
    count = len(exclusions)
    ws.merge_cells("A1:E1")
    summary = ws["A1"]
    summary.value = (
        "1 utente non può essere esportato per AICS"
        if count == 1
        else f"{count} utenti non possono essere esportati per AICS"
    )
    summary.font = Font(bold=True, size=14)

    for index, header in enumerate(EXCLUDED_HEADERS, start=1):
        cell = ws.cell(row=2, column=index, value=header)
        cell.font = Font(bold=True, color="FFFFFFFF")
        cell.fill = _RED
        cell.alignment = _CENTER
        cell.border = _BORDER

    for offset, item in enumerate(exclusions):
        values = (item.email, item.first_name, item.last_name, item.tax_code, item.reason)
        for index, value in enumerate(values, start=1):
            cell = ws.cell(row=offset + 3, column=index, value=value)
            cell.fill = _LIGHT_RED

    for letter, width in zip("ABCDE", (35, 20, 20, 20, 50)):
        ws.column_dimensions[letter].width = width
    ws.auto_filter.ref = f"A2:E{count + 2}"
    ws.freeze_panes = "A3"
