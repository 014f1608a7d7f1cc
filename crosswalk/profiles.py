"""Entity profiles: where each multi-source entity lives and how it merges.

SYSTEM_OF_RECORD is the per-entity precedence table (which source system's
values win on conflict). ENTITY_PROFILES describes, per entity type, the ODS
table both systems land in, the strong natural key and name columns used
for matching, the crosswalk table, and the staging field mapping.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import connections

SOURCE_A = "OMS"
SOURCE_B = "VEMS"


@dataclass(frozen=True)
class SourcePrecedence:
    entity_type: str
    primary_source: str
    fallback_source: str | None
    reconciliation_rule: str = "PREFER_PRIMARY"


SYSTEM_OF_RECORD: dict[str, SourcePrecedence] = {
    "VETERAN": SourcePrecedence("VETERAN", SOURCE_A, SOURCE_B),
    # VEMS carries the more current evaluator data.
    "EVALUATOR": SourcePrecedence("EVALUATOR", SOURCE_B, SOURCE_A),
    "FACILITY": SourcePrecedence("FACILITY", SOURCE_A, SOURCE_B),
}

_NON_DIGITS = re.compile(r"[^0-9]")


def _upper(value: Any) -> Any:
    return value.strip().upper() if isinstance(value, str) else value


def _lower(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


def _digits(value: Any) -> Any:
    if value is None:
        return None
    return _NON_DIGITS.sub("", str(value)) or None


TRANSFORMS = {
    "upper": _upper,
    "lower": _lower,
    "digits": _digits,
}


def apply_transform(name: str | None, value: Any) -> Any:
    """Cleanse one source value before it is compared or staged."""
    if name is None:
        return value
    return TRANSFORMS[name](value)


@dataclass(frozen=True)
class FieldMapping:
    """Staging column fed from one column of each source system."""

    target: str
    column_a: str
    column_b: str | None = None
    transform: str | None = None

    @property
    def source_b_column(self) -> str:
        return self.column_b or self.column_a


@dataclass(frozen=True)
class EntityProfile:
    entity_type: str
    ods_table: str
    crosswalk_table: str
    strong_key_a: str
    strong_key_b: str
    name_columns_a: tuple[str, ...]
    name_columns_b: tuple[str, ...]
    staging_table: str
    dimension_table: str
    business_key_column: str
    fields: tuple[FieldMapping, ...]
    tracked_fields: tuple[str, ...]
    source_a_system: str = SOURCE_A
    source_b_system: str = SOURCE_B
    record_id_column: str = "source_record_id"
    source_system_column: str = "source_system"
    hash_column: str = "source_record_hash"

    @property
    def columns_a(self) -> list[str]:
        """Source-A columns the staging transform reads."""
        return _unique([self.record_id_column] + [f.column_a for f in self.fields])

    @property
    def columns_b(self) -> list[str]:
        return _unique([self.record_id_column] + [f.source_b_column for f in self.fields])

    @property
    def staging_columns(self) -> list[str]:
        return [self.business_key_column] + [f.target for f in self.fields]

    def validate(self) -> None:
        """H-1: Every name in the profile is interpolated into SQL."""
        v = connections.validate_identifier
        v(self.ods_table, "ODS table")
        v(self.crosswalk_table, "crosswalk table")
        v(self.staging_table, "staging table")
        v(self.dimension_table, "dimension table")
        v(self.strong_key_a, "strong key column")
        v(self.strong_key_b, "strong key column")
        v(self.business_key_column, "business key column")
        v(self.record_id_column, "record id column")
        v(self.source_system_column, "source system column")
        v(self.hash_column, "hash column")
        connections.validate_identifiers(self.name_columns_a, "name column")
        connections.validate_identifiers(self.name_columns_b, "name column")
        for f in self.fields:
            v(f.target, "staging column")
            v(f.column_a, "source column")
            v(f.source_b_column, "source column")
            if f.transform is not None and f.transform not in TRANSFORMS:
                raise ValueError(f"Unknown transform '{f.transform}' for {self.entity_type}.{f.target}")
        targets = {f.target for f in self.fields}
        unknown = [t for t in self.tracked_fields if t not in targets]
        if unknown:
            raise ValueError(f"Tracked fields not mapped for {self.entity_type}: {unknown}")


def _unique(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


ENTITY_PROFILES: dict[str, EntityProfile] = {
    "VETERAN": EntityProfile(
        entity_type="VETERAN",
        ods_table="ods_veterans_source",
        crosswalk_table="ref_entity_crosswalk_veteran",
        strong_key_a="veteran_ssn",
        strong_key_b="veteran_ssn",
        name_columns_a=("first_name", "last_name"),
        name_columns_b=("first_name", "last_name"),
        staging_table="stg_veterans",
        dimension_table="dim_veteran",
        business_key_column="veteran_id",
        fields=(
            FieldMapping("first_name", "first_name", transform="upper"),
            FieldMapping("middle_name", "middle_name", transform="upper"),
            FieldMapping("last_name", "last_name", transform="upper"),
            FieldMapping("date_of_birth", "date_of_birth"),
            FieldMapping("gender", "gender", transform="upper"),
            FieldMapping("email", "email", transform="lower"),
            FieldMapping("phone", "phone_primary", "phone", transform="digits"),
            FieldMapping("address_line1", "address_line1", transform="upper"),
            FieldMapping("city", "city", transform="upper"),
            FieldMapping("state", "state", transform="upper"),
            FieldMapping("zip_code", "zip_code"),
            FieldMapping("service_branch", "service_branch", transform="upper"),
            FieldMapping("disability_rating", "disability_rating"),
            FieldMapping("va_enrolled_flag", "va_enrolled_flag"),
        ),
        tracked_fields=("first_name", "last_name", "date_of_birth", "disability_rating", "email", "phone"),
    ),
    "EVALUATOR": EntityProfile(
        entity_type="EVALUATOR",
        ods_table="ods_evaluators_source",
        crosswalk_table="ref_entity_crosswalk_evaluator",
        strong_key_a="evaluator_npi",
        strong_key_b="npi_number",
        name_columns_a=("first_name", "last_name"),
        name_columns_b=("first_name", "last_name"),
        staging_table="stg_evaluators",
        dimension_table="dim_evaluator",
        business_key_column="evaluator_id",
        fields=(
            FieldMapping("first_name", "first_name", transform="upper"),
            FieldMapping("last_name", "last_name", transform="upper"),
            FieldMapping("specialty", "specialty", transform="upper"),
            FieldMapping("credentials", "credentials", transform="upper"),
            FieldMapping("license_number", "license_number"),
            FieldMapping("license_state", "license_state", transform="upper"),
            FieldMapping("npi_number", "evaluator_npi", "npi_number", transform="digits"),
            FieldMapping("employer_name", "employer_name", transform="upper"),
        ),
        tracked_fields=("first_name", "last_name", "specialty", "license_number", "npi_number"),
    ),
    "FACILITY": EntityProfile(
        entity_type="FACILITY",
        ods_table="ods_facilities_source",
        crosswalk_table="ref_entity_crosswalk_facility",
        strong_key_a="facility_id",
        strong_key_b="facility_id",
        name_columns_a=("facility_name",),
        name_columns_b=("facility_name",),
        staging_table="stg_facilities",
        dimension_table="dim_facility",
        business_key_column="facility_id",
        fields=(
            FieldMapping("facility_code", "facility_id"),
            FieldMapping("facility_name", "facility_name", transform="upper"),
            FieldMapping("facility_type", "facility_type", transform="upper"),
            FieldMapping("city", "city", transform="upper"),
            FieldMapping("state", "state", transform="upper"),
            FieldMapping("zip_code", "zip_code"),
            FieldMapping("phone", "phone", transform="digits"),
        ),
        tracked_fields=("facility_name", "facility_type", "city", "state"),
    ),
}


def get_profile(entity_type: str, profiles: dict[str, EntityProfile] | None = None) -> EntityProfile:
    profiles = ENTITY_PROFILES if profiles is None else profiles
    key = entity_type.upper() if isinstance(entity_type, str) else entity_type
    try:
        return profiles[key]
    except KeyError:
        raise ValueError(
            f"Unknown entity type {entity_type!r}; known: {sorted(profiles)}"
        ) from None


def get_precedence(entity_type: str, table: dict[str, SourcePrecedence] | None = None) -> SourcePrecedence:
    table = SYSTEM_OF_RECORD if table is None else table
    try:
        return table[entity_type]
    except KeyError:
        raise ValueError(f"No system-of-record entry for entity type {entity_type!r}") from None
