"""Identity resolution for schools whose display name drifts between years.

Entity codes are treated as the stable identity; names are allowed to change.
The resolution is a single batch pass:

- collect the distinct (code, name, year) observations,
- flag codes observed under more than one name,
- take the name from the most recent year as canonical for each flagged code,
- rewrite every record of that code to the canonical name.

Codes are never merged.  If one name shows up under several codes the records
stay separate and an ``AmbiguousIdentityWarning`` is returned so the analyst
can review it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Sequence

import pandas as pd

from .data_sources import GROUP_CODE_WIDTH, normalise_codes
from .errors import AmbiguousIdentityWarning
from .grades import validate_grades

DISPLAY_SUFFIXES: tuple[str, ...] = ("High School", "Campus")


@dataclass(frozen=True)
class IdentityResolution:
    frame: pd.DataFrame
    mapping: dict[str, str]
    warnings: list[AmbiguousIdentityWarning] = field(default_factory=list)


def restrict_scope(
    frame: pd.DataFrame, group_code: str, grades: Iterable[object]
) -> pd.DataFrame:
    """Keep the records of one parent group and the grades under analysis."""

    code = normalise_codes(pd.Series([str(group_code)]), GROUP_CODE_WIDTH).iloc[0]
    keep = validate_grades(grades)
    mask = (frame["group_code"] == code) & frame["grade"].isin(keep)
    return frame.loc[mask].reset_index(drop=True)


def strip_display_suffixes(name: str, suffixes: Sequence[str] = DISPLAY_SUFFIXES) -> str:
    """Drop trailing suffix tokens such as "High School" from a display name."""

    if not suffixes:
        return name
    pattern = re.compile(
        r"(?:\s+(?:" + "|".join(re.escape(s) for s in suffixes) + r"))+\s*$",
        re.IGNORECASE,
    )
    stripped = pattern.sub("", name).strip()
    return stripped or name


def observed_names(frame: pd.DataFrame) -> pd.DataFrame:
    return (
        frame.loc[frame["entity_name"].notna(), ["entity_code", "entity_name", "year"]]
        .drop_duplicates()
        .sort_values(["entity_code", "year", "entity_name"])
        .reset_index(drop=True)
    )


def find_shared_names(observed: pd.DataFrame) -> list[AmbiguousIdentityWarning]:
    """Report names that appear under more than one entity code."""

    codes_by_name = observed.groupby("entity_name")["entity_code"].unique()
    warnings: list[AmbiguousIdentityWarning] = []
    for name, codes in codes_by_name.items():
        if len(codes) < 2:
            continue
        codes = sorted(str(c) for c in codes)
        warnings.append(
            AmbiguousIdentityWarning(
                f"Name {name!r} is used by codes {', '.join(codes)}; "
                "they are kept as separate entities.",
                entity_name=str(name),
                entity_codes=codes,
            )
        )
    return warnings


def build_identity_mapping(
    frame: pd.DataFrame, suffixes: Sequence[str] = DISPLAY_SUFFIXES
) -> tuple[dict[str, str], list[AmbiguousIdentityWarning]]:
    """Return ``entity_code -> canonical_name`` for every drifted code."""

    observed = observed_names(frame)
    warnings = find_shared_names(observed)

    name_counts = observed.groupby("entity_code")["entity_name"].nunique()
    drifted = sorted(name_counts[name_counts > 1].index)

    mapping: dict[str, str] = {}
    for code in drifted:
        history = observed.loc[observed["entity_code"] == code]
        latest = history.loc[history["year"] == history["year"].max(), "entity_name"]
        names = sorted(str(n) for n in latest.unique())
        if len(names) > 1:
            warnings.append(
                AmbiguousIdentityWarning(
                    f"Code {code} has several names in its latest year "
                    f"({'; '.join(names)}); using {names[0]!r}.",
                    entity_code=str(code),
                    names=names,
                )
            )
        mapping[str(code)] = strip_display_suffixes(names[0], suffixes)
    return mapping, warnings


def apply_identity_mapping(frame: pd.DataFrame, mapping: dict[str, str]) -> pd.DataFrame:
    output = frame.copy()
    mask = output["entity_code"].isin(list(mapping))
    if mask.any():
        output.loc[mask, "entity_name"] = output.loc[mask, "entity_code"].map(mapping)
    return output


def reconcile_identities(
    frame: pd.DataFrame, suffixes: Sequence[str] = DISPLAY_SUFFIXES
) -> IdentityResolution:
    """Resolve name drift across years; codes with a single name pass through."""

    mapping, warnings = build_identity_mapping(frame, suffixes)
    return IdentityResolution(
        frame=apply_identity_mapping(frame, mapping),
        mapping=mapping,
        warnings=warnings,
    )


__all__ = [
    "DISPLAY_SUFFIXES",
    "IdentityResolution",
    "apply_identity_mapping",
    "build_identity_mapping",
    "reconcile_identities",
    "restrict_scope",
    "strip_display_suffixes",
]
