"""Find (and optionally fix) first/last names that do not match the fiscal code.

For each profile with a well-formed fiscal code, the name and surname codes
are recomputed from the stored names and compared with characters 1-6 of the
code. A first-name mismatch is often a missing second given name
("Bianca" registered, "Bianca Maria" encoded): those are fixable by
appending a name from data/nomi_italiani.json.

Usage:
    python -m src.scripts.fix_names_from_cf          # dry run, report only
    python -m src.scripts.fix_names_from_cf --fix    # write suggested names
"""

from __future__ import annotations

import argparse
import asyncio
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.db.engine import script_session
from src.decoders.codice_fiscale import (
    generate_name_code,
    generate_surname_code,
    suggest_compound_name,
    validate_format,
)
from src.decoders.comuni import load_italian_names
from src.models.user import Profile


@dataclass
class NameIssue:
    profile_id: uuid.UUID
    email: str
    tax_code: str
    kind: str  # "name", "surname" or "both"
    first_name: str
    last_name: str
    suggested_first_name: str | None = None
    fixed: bool = False


@dataclass
class NameReport:
    checked: int = 0
    name_only: int = 0
    surname_only: int = 0
    both: int = 0
    fixable: int = 0
    not_fixable: int = 0


def check_profile(
    profile_id: uuid.UUID,
    email: str,
    tax_code: str | None,
    first_name: str | None,
    last_name: str | None,
    names_db: Mapping[str, str],
) -> NameIssue | None:
    """None when the profile is skipped or its names match the code."""
    cf = (tax_code or "").strip().upper()
    if not first_name or not last_name or not validate_format(cf):
        return None

    name_ok = generate_name_code(first_name) == cf[3:6]
    surname_ok = generate_surname_code(last_name) == cf[0:3]
    if name_ok and surname_ok:
        return None

    kind = "both" if not name_ok and not surname_ok else ("name" if not name_ok else "surname")
    suggestion = suggest_compound_name(cf, first_name, names_db) if kind == "name" else None
    return NameIssue(
        profile_id=profile_id,
        email=email,
        tax_code=cf,
        kind=kind,
        first_name=first_name,
        last_name=last_name,
        suggested_first_name=suggestion,
    )


def summarize(checked: int, issues: Iterable[NameIssue]) -> NameReport:
    report = NameReport(checked=checked)
    for issue in issues:
        if issue.kind == "name":
            report.name_only += 1
        elif issue.kind == "surname":
            report.surname_only += 1
        else:
            report.both += 1
        if issue.suggested_first_name:
            report.fixable += 1
        else:
            report.not_fixable += 1
    return report


async def find_name_issues(db: AsyncSession, names_db: Mapping[str, str]) -> tuple[int, list[NameIssue]]:
    """(profiles checked, issues found) over every profile with a fiscal code."""
    result = await db.execute(
        select(Profile)
        .where(Profile.tax_code.isnot(None), Profile.tax_code != "", Profile.tax_code != "0" * 16)
        .options(selectinload(Profile.user))
    )
    checked = 0
    issues: list[NameIssue] = []
    for profile in result.scalars().all():
        checked += 1
        issue = check_profile(
            profile.id,
            profile.user.email if profile.user else "",
            profile.tax_code,
            profile.first_name,
            profile.last_name,
            names_db,
        )
        if issue is not None:
            issues.append(issue)
    return checked, issues


async def apply_fixes(db: AsyncSession, issues: Iterable[NameIssue]) -> int:
    fixed = 0
    for issue in issues:
        if not issue.suggested_first_name:
            continue
        profile = await db.get(Profile, issue.profile_id)
        if profile is None:
            continue
        profile.first_name = issue.suggested_first_name
        issue.fixed = True
        fixed += 1
    await db.flush()
    return fixed


def _print_report(report: NameReport, issues: list[NameIssue], fix_mode: bool) -> None:
    print("=" * 70)
    print("  MODALITA FIX: le correzioni verranno scritte nel DB" if fix_mode else "  DRY-RUN: nessuna modifica al DB")
    print("=" * 70)
    for issue in issues:
        line = f"[{issue.kind}] {issue.email}  {issue.tax_code}  {issue.first_name} {issue.last_name}"
        if issue.suggested_first_name:
            line += f"  -> {issue.suggested_first_name}"
            if issue.fixed:
                line += " (corretto)"
        print(line)
    print()
    print(f"Profili controllati: {report.checked}")
    print(f"Solo nome:           {report.name_only}")
    print(f"Solo cognome:        {report.surname_only}")
    print(f"Entrambi:            {report.both}")
    print(f"Correggibili:        {report.fixable}")
    print(f"Non correggibili:    {report.not_fixable}")


async def _run(fix_mode: bool) -> None:
    names_db = load_italian_names()
    print(f"{len(names_db)} nomi caricati")
    async with script_session() as db:
        checked, issues = await find_name_issues(db, names_db)
        if fix_mode:
            await apply_fixes(db, issues)
        _print_report(summarize(checked, issues), issues, fix_mode)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Check first/last names against the fiscal code")
    parser.add_argument("--fix", action="store_true", help="Write the suggested compound first names")
    args = parser.parse_args(argv)
    asyncio.run(_run(args.fix))


if __name__ == "__main__":
    main()
