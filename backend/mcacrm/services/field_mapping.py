"""
Field-name normalization for lead updates.

The frontend, CSV tooling and the workflow worker all send lead fields under
different names (camelCase, snake_case, old UI labels). Every accepted name is
declared once in FIELD_SCHEMA; the forward map (external name -> column) and the
reverse map (column -> preferred external name) are generated from it.

Collisions are settled by payload order: when several names for one column
arrive together, the first key seen in the payload wins and later ones are
dropped (logged). The first alias listed is the preferred external name.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class Table(str, Enum):
    CONVERSATIONS = "conversations"
    LEAD_DETAILS = "lead_details"


class FieldType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    DECIMAL = "decimal"
    DATE = "date"


@dataclass(frozen=True)
class FieldSpec:
    canonical: str
    table: Table
    type: FieldType
    aliases: Tuple[str, ...]
    drop_empty: bool = False  # "" means "not provided", not "clear it"


C = Table.CONVERSATIONS
D = Table.LEAD_DETAILS
S, I, N, DT = FieldType.STRING, FieldType.INTEGER, FieldType.DECIMAL, FieldType.DATE


# ============================================================================
# SCHEMA
# ============================================================================

FIELD_SCHEMA: List[FieldSpec] = [
    # Business (conversations)
    FieldSpec("business_name", C, S, ("businessName", "business_name")),
    FieldSpec("dba_name", C, S, ("dbaName", "dba_name")),
    FieldSpec("address", C, S, ("businessAddress", "business_address", "address")),
    FieldSpec("city", C, S, ("businessCity", "business_city", "city")),
    FieldSpec("us_state", C, S, ("businessState", "business_state", "us_state"), drop_empty=True),
    FieldSpec("zip", C, S, ("businessZip", "business_zip", "zip")),
    FieldSpec("lead_phone", C, S, ("primaryPhone", "primary_phone", "lead_phone", "phone")),
    FieldSpec("cell_phone", C, S, ("cellPhone", "cell_phone")),
    FieldSpec("email", C, S, ("businessEmail", "business_email", "email")),
    FieldSpec("lead_source", C, S, ("leadSource", "lead_source")),
    FieldSpec("entity_type", C, S, ("entityType", "entity_type")),
    FieldSpec("notes", C, S, ("notes",)),

    # Pipeline (conversations)
    FieldSpec("state", C, S, ("leadStatus", "lead_status", "state"), drop_empty=True),
    FieldSpec("current_step", C, S, ("currentStep", "current_step")),
    FieldSpec("priority", C, I, ("priority",)),
    FieldSpec("monthly_revenue", C, N, ("monthlyRevenue", "monthly_revenue")),
    FieldSpec("time_in_business_months", C, I, ("timeInBusinessMonths", "time_in_business_months")),
    FieldSpec("credit_score", C, I, ("creditScore", "credit_score", "fico")),

    # Primary owner (conversations)
    FieldSpec("first_name", C, S, ("ownerFirstName", "owner_first_name", "first_name")),
    FieldSpec("last_name", C, S, ("ownerLastName", "owner_last_name", "last_name")),
    FieldSpec("owner_email", C, S, ("ownerEmail", "owner_email")),
    FieldSpec("ownership_percent", C, N, ("ownershipPercent", "ownership_percent", "ownership_percentage")),
    FieldSpec("owner_home_address", C, S, ("ownerHomeAddress", "owner_home_address", "owner_address")),
    FieldSpec("owner_home_address2", C, S, ("ownerHomeAddress2", "owner_home_address2")),
    FieldSpec("owner_home_city", C, S, ("ownerHomeCity", "owner_home_city", "owner_city")),
    FieldSpec("owner_home_state", C, S, ("ownerHomeState", "owner_home_state", "owner_state"), drop_empty=True),
    FieldSpec("owner_home_zip", C, S, ("ownerHomeZip", "owner_home_zip", "owner_zip")),
    FieldSpec("owner_home_country", C, S, ("ownerHomeCountry", "owner_home_country")),

    # Second owner (conversations)
    FieldSpec("owner2_first_name", C, S, ("owner2FirstName", "owner2_first_name")),
    FieldSpec("owner2_last_name", C, S, ("owner2LastName", "owner2_last_name")),
    FieldSpec("owner2_email", C, S, ("owner2Email", "owner2_email")),
    FieldSpec("owner2_phone", C, S, ("owner2Phone", "owner2_phone")),
    FieldSpec("owner2_ownership_percent", C, N,
              ("owner2OwnershipPercent", "owner2_ownership_percent", "owner2_ownership_percentage")),
    FieldSpec("owner2_address", C, S,
              ("owner2HomeAddress", "owner2_home_address", "owner2_address", "owner2Address")),
    FieldSpec("owner2_city", C, S, ("owner2HomeCity", "owner2_home_city", "owner2_city", "owner2City")),
    FieldSpec("owner2_state", C, S, ("owner2HomeState", "owner2_home_state", "owner2_state", "owner2State")),
    FieldSpec("owner2_zip", C, S, ("owner2HomeZip", "owner2_home_zip", "owner2_zip", "owner2Zip")),
    FieldSpec("owner2_ssn", C, S, ("owner2SSN", "owner2_ssn", "owner2_s_s_n")),
    FieldSpec("owner2_dob", C, DT, ("owner2DOB", "owner2_dob", "owner2_d_o_b")),

    # Lead details
    FieldSpec("date_of_birth", D, DT,
              ("ownerDOB", "owner_dob", "owner_d_o_b", "owner_date_of_birth", "date_of_birth")),
    FieldSpec("ssn", D, S, ("ownerSSN", "owner_ssn", "owner_s_s_n", "ssn")),
    FieldSpec("tax_id", D, S, ("federalTaxId", "federal_tax_id", "taxId", "tax_id")),
    FieldSpec("business_start_date", D, DT, ("businessStartDate", "business_start_date")),
    FieldSpec("funding_date", D, DT, ("fundingDate", "funding_date")),
    FieldSpec("business_type", D, S, ("industryType", "industry_type", "industry", "business_type")),
    FieldSpec("annual_revenue", D, N, ("annualRevenue", "annual_revenue")),
    FieldSpec("funding_amount", D, N, ("requestedAmount", "requested_amount", "funding_amount")),
    FieldSpec("factor_rate", D, N, ("factorRate", "factor_rate")),
    FieldSpec("term_months", D, I, ("termMonths", "term_months")),
    FieldSpec("campaign", D, S, ("campaign",)),
]

IGNORED_FIELDS = {"id", "display_id", "created_at", "updated_at", "last_activity"}


def _build_alias_map(schema: List[FieldSpec]) -> Dict[str, FieldSpec]:
    alias_map: Dict[str, FieldSpec] = {}
    for spec in schema:
        for alias in spec.aliases:
            if alias in alias_map:
                raise ValueError(f"Alias '{alias}' declared twice ({alias_map[alias].canonical}, {spec.canonical})")
            alias_map[alias] = spec
    return alias_map


ALIAS_MAP: Dict[str, FieldSpec] = _build_alias_map(FIELD_SCHEMA)

# Canonical column -> preferred external (first-declared) name
REVERSE_MAP: Dict[Tuple[Table, str], str] = {
    (spec.table, spec.canonical): spec.aliases[0] for spec in FIELD_SCHEMA
}


# ============================================================================
# VALUE CONVERSION
# ============================================================================

_CURRENCY_CHARS = re.compile(r"[$,%\s]")


def parse_decimal(value: Any) -> Optional[Decimal]:
    """Accept numbers or currency-formatted strings ("$12,500.00", "45%")."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value))
    cleaned = _CURRENCY_CHARS.sub("", str(value))
    if not cleaned:
        return None
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"not a number: {value!r}")


def parse_integer(value: Any) -> Optional[int]:
    number = parse_decimal(value)
    return int(number) if number is not None else None


def parse_date(value: Any) -> Optional[date]:
    """ISO (YYYY-MM-DD, optionally with a time part) or MM/DD/YYYY."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y", "%m-%d-%Y"):
        try:
            return datetime.strptime(text[:10] if fmt == "%Y-%m-%d" else text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"not a date: {value!r}")


def convert_value(spec: FieldSpec, value: Any) -> Any:
    if spec.type == FieldType.STRING:
        return value if value is None else str(value).strip()
    if isinstance(value, str) and not value.strip():
        return None
    if spec.type == FieldType.DECIMAL:
        return parse_decimal(value)
    if spec.type == FieldType.INTEGER:
        return parse_integer(value)
    return parse_date(value)


# ============================================================================
# NORMALIZATION
# ============================================================================

@dataclass
class NormalizedUpdate:
    conversation: Dict[str, Any]
    lead_details: Dict[str, Any]
    ignored: List[str]

    @property
    def is_empty(self) -> bool:
        return not self.conversation and not self.lead_details


def normalize_fields(payload: Dict[str, Any]) -> NormalizedUpdate:
    """Map an externally-named field bag onto the two lead tables."""
    conversation: Dict[str, Any] = {}
    details: Dict[str, Any] = {}
    ignored: List[str] = []

    for key in payload:
        if key not in ALIAS_MAP and key not in IGNORED_FIELDS:
            ignored.append(key)
    if ignored:
        logger.warning(f"Ignoring unknown lead fields: {', '.join(sorted(ignored))}")

    for spec in FIELD_SCHEMA:
        # payload order: the first key seen for a column wins
        present = [key for key in payload if key in spec.aliases]
        if not present:
            continue

        winner = None
        for alias in present:
            raw = payload[alias]
            if spec.drop_empty and isinstance(raw, str) and not raw.strip():
                continue
            winner = alias
            break
        if winner is None:
            continue

        for loser in present[present.index(winner) + 1:]:
            logger.info(f"Duplicate field '{loser}' for {spec.canonical} dropped; '{winner}' wins")

        try:
            value = convert_value(spec, payload[winner])
        except ValueError as e:
            logger.warning(f"Dropping {spec.canonical} from '{winner}': {e}")
            continue

        target = conversation if spec.table == Table.CONVERSATIONS else details
        target[spec.canonical] = value

    return NormalizedUpdate(conversation=conversation, lead_details=details, ignored=ignored)


def to_external(table: Table, record: Dict[str, Any]) -> Dict[str, Any]:
    """Rename canonical columns to their preferred external names."""
    return {
        REVERSE_MAP.get((table, column), column): value
        for column, value in record.items()
    }
