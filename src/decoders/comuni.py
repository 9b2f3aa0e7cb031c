"""Italian municipality reference data.

Backed by JSON files under data/:
  - comuni.json: municipalities and foreign states (province "EE") with
    their cadastral (Belfiore) code
  - province.json: per province, capoluogo and postal code (CAP) ranges
  - nomi_italiani.json: common Italian first names with their gender

Used by the fiscal code engine (birthplace lookup) and the AICS export
(residence normalization).
"""

from __future__ import annotations

import json
import logging
import unicodedata
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

logger = logging.getLogger(__name__)

_DATA_DIR = Path(__file__).resolve().parent.parent.parent / "data"
_COMUNI_PATH = _DATA_DIR / "comuni.json"
_PROVINCE_PATH = _DATA_DIR / "province.json"
_NAMES_PATH = _DATA_DIR / "nomi_italiani.json"

FOREIGN_PROVINCE = "EE"


@dataclass(frozen=True)
class Comune:
    regione: str
    provincia_code: str
    provincia_nome: str
    comune: str
    codice_catastale: str | None = None
    codice_istat: str | None = None
    alias: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_foreign(self) -> bool:
        return self.provincia_code == FOREIGN_PROVINCE


@dataclass(frozen=True)
class ProvinceInfo:
    code: str
    capoluogo: str
    cap_prefix: str
    main_cap: str
    cap_min: int
    cap_max: int


def normalize_comune_name(name: str | None) -> str:
    """Upper-case, strip accents, unify apostrophes and collapse whitespace."""
    if not name:
        return ""
    folded = unicodedata.normalize("NFD", name.strip().upper())
    folded = "".join(ch for ch in folded if unicodedata.category(ch) != "Mn")
    for quote in ("’", "‘", "`", "´"):
        folded = folded.replace(quote, "'")
    return " ".join(folded.split())


def _normalize_cap(cap: str | None) -> str | None:
    digits = "".join(ch for ch in (cap or "") if ch.isdigit())
    if not digits or len(digits) > 5:
        return None
    return digits.zfill(5)


# ---------------------------------------------------------------------------
# Loaders (cached)
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def load_comuni() -> tuple[Comune, ...]:
    """All municipality records, in file order."""
    if not _COMUNI_PATH.exists():
        logger.warning("Municipality data not found at %s", _COMUNI_PATH)
        return ()
    with open(_COMUNI_PATH, encoding="utf-8") as f:
        data = json.load(f)
    return tuple(
        Comune(**{**row, "alias": tuple(row.get("alias") or ())})
        for row in data.get("comuni", [])
    )


@lru_cache(maxsize=1)
def load_province() -> dict[str, ProvinceInfo]:
    """Province code → capoluogo and CAP info."""
    if not _PROVINCE_PATH.exists():
        logger.warning("Province data not found at %s", _PROVINCE_PATH)
        return {}
    with open(_PROVINCE_PATH, encoding="utf-8") as f:
        data = json.load(f)
    return {code: ProvinceInfo(code=code, **info) for code, info in data.items()}


@lru_cache(maxsize=1)
def load_italian_names() -> dict[str, str]:
    """Upper-case first name → "M"/"F", for compound-name suggestions."""
    if not _NAMES_PATH.exists():
        logger.warning("Names data not found at %s", _NAMES_PATH)
        return {}
    with open(_NAMES_PATH, encoding="utf-8") as f:
        data = json.load(f)
    return {name.upper(): gender for name, gender in data.items() if gender in ("M", "F")}


@lru_cache(maxsize=1)
def _by_catastale() -> dict[str, Comune]:
    return {c.codice_catastale: c for c in load_comuni() if c.codice_catastale}


@lru_cache(maxsize=1)
def _by_name() -> dict[tuple[str, str], Comune]:
    index: dict[tuple[str, str], Comune] = {}
    for c in load_comuni():
        for name in (c.comune, *c.alias):
            index.setdefault((normalize_comune_name(name), c.provincia_code), c)
    return index


# ---------------------------------------------------------------------------
# Municipality lookups
# ---------------------------------------------------------------------------


def find_comune_by_catastale(code: str | None) -> Comune | None:
    if not code:
        return None
    return _by_catastale().get(code.strip().upper())


def find_comune_by_name(name: str | None, province: str | None = None) -> Comune | None:
    """Exact (normalized) name match, optionally restricted to a province."""
    key = normalize_comune_name(name)
    if not key:
        return None
    if province:
        return _by_name().get((key, province.strip().upper()))
    for (candidate, _prov), comune in _by_name().items():
        if candidate == key:
            return comune
    return None


def get_comuni_by_provincia(province: str | None) -> list[Comune]:
    code = (province or "").strip().upper()
    return [c for c in load_comuni() if c.provincia_code == code]


def is_valid_comune(city: str | None, province: str | None) -> bool:
    """True if the pair exists. Foreign residence (EE) is always accepted."""
    if not city or not city.strip() or not province or not province.strip():
        return False
    if province.strip().upper() == FOREIGN_PROVINCE:
        return True
    return find_comune_by_name(city, province) is not None


def get_official_comune_name(city: str | None, province: str | None) -> str | None:
    comune = find_comune_by_name(city, province) if province else None
    return comune.comune if comune else None


def search_comuni(query: str, province: str | None = None, limit: int = 10) -> list[Comune]:
    """Prefix matches first, then substring matches. Queries under 2 chars return nothing."""
    needle = normalize_comune_name(query)
    if len(needle) < 2:
        return []
    prov = province.strip().upper() if province else None
    prefix: list[Comune] = []
    contains: list[Comune] = []
    for c in load_comuni():
        if (prov and c.provincia_code != prov) or (not prov and c.is_foreign):
            continue
        name = normalize_comune_name(c.comune)
        if name.startswith(needle):
            prefix.append(c)
        elif needle in name:
            contains.append(c)
    return (prefix + contains)[:limit]


# ---------------------------------------------------------------------------
# Province and CAP
# ---------------------------------------------------------------------------


def is_province_code(value: str | None) -> bool:
    """True for a two-letter Italian province code or EE."""
    if not value:
        return False
    code = value.strip().upper()
    return len(code) == 2 and (code in load_province() or code == FOREIGN_PROVINCE)


def get_capoluogo(province: str | None) -> str | None:
    info = load_province().get((province or "").strip().upper())
    return info.capoluogo if info else None


def province_from_cap(cap: str | None) -> str | None:
    """Province owning a postal code.

    Several provinces share a two-digit prefix (MI/MB/LO/CR...). A CAP inside
    a capoluogo range wins; otherwise the first province by capoluogo name,
    with Milano preferred for 20xxx.
    """
    normalized = _normalize_cap(cap)
    if normalized is None:
        return None
    number = int(normalized)
    candidates = [p for p in load_province().values() if p.cap_prefix == normalized[:2]]
    if not candidates:
        return None
    if len(candidates) == 1:
        return candidates[0].code
    for p in candidates:
        if p.cap_min <= number <= p.cap_max:
            return p.code
    if normalized[:2] == "20" and any(p.code == "MI" for p in candidates):
        return "MI"
    return sorted(candidates, key=lambda p: p.capoluogo)[0].code


def city_from_cap(cap: str | None, province: str | None) -> str | None:
    """Capoluogo of `province` if the CAP falls in its city range."""
    normalized = _normalize_cap(cap)
    info = load_province().get((province or "").strip().upper())
    if normalized is None or info is None:
        return None
    if info.cap_min <= int(normalized) <= info.cap_max:
        return info.capoluogo
    return None
