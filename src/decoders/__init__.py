"""Deterministic data decoders: fiscal code engine and municipality lookups."""

from src.decoders.codice_fiscale import decode, validate_tax_code
from src.decoders.comuni import find_comune_by_catastale, find_comune_by_name

__all__ = ["decode", "find_comune_by_catastale", "find_comune_by_name", "validate_tax_code"]
