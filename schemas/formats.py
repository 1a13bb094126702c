"""
Field-extraction specifications per entity kind.

Each spec is an ordered list of `FieldSpec`. The same list drives the CSV
column header line and the order of values in every output format, so the
header and the rows can never drift apart.

Field mapping (USER):
    username -> User name
    id -> User id
    externalSystemId -> External System ID
    barcode -> Barcode
    active -> Active
    type -> Type
    patronGroup -> Patron group
    departments -> Departments (joined)
    personal.* -> contact columns
    expirationDate -> Expiration date (date only)
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from models.base import EntityType


Processor = Callable[[Any], Any]


def identity(value: Any) -> Any:
    return value


def truncate(length: int) -> Processor:
    """Cut string values down to `length` characters."""
    def _truncate(value: Any) -> Any:
        if isinstance(value, str) and len(value) > length:
            return value[:length]
        return value
    return _truncate


def enum_label(mapping: Dict[Any, str], default: Optional[str] = None) -> Processor:
    """Map raw enum codes to display labels; unknown codes fall back to `default` or pass through."""
    def _label(value: Any) -> Any:
        if value is None:
            return None
        if value in mapping:
            return mapping[value]
        return default if default is not None else value
    return _label


def join(separator: str = ";") -> Processor:
    """Collapse list values into one string."""
    def _join(value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return separator.join(str(v) for v in value if v is not None)
        return value
    return _join


def date_only(value: Any) -> Any:
    """Reduce an ISO timestamp to its date part."""
    if value is None or value == "":
        return value
    if isinstance(value, datetime):
        return value.date().isoformat()
    return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date().isoformat()


@dataclass(frozen=True)
class FieldSpec:
    header: str
    path: str
    processor: Processor = identity
    required: bool = True


def column_headers(specs: List[FieldSpec]) -> Tuple[str, ...]:
    return tuple(spec.header for spec in specs)


def field_names(specs: List[FieldSpec]) -> Tuple[str, ...]:
    return tuple(spec.path for spec in specs)


# ============================================================================
# Entity field specs
# ============================================================================

USER_FIELDS: List[FieldSpec] = [
    FieldSpec("User name", "username"),
    FieldSpec("User id", "id"),
    FieldSpec("External System ID", "externalSystemId", required=False),
    FieldSpec("Barcode", "barcode", required=False),
    FieldSpec("Active", "active"),
    FieldSpec("Type", "type", required=False),
    FieldSpec("Patron group", "patronGroup"),
    FieldSpec("Departments", "departments", join(";"), required=False),
    FieldSpec("Last name", "personal.lastName"),
    FieldSpec("First name", "personal.firstName", required=False),
    FieldSpec("Email", "personal.email", required=False),
    FieldSpec("Preferred contact type id", "personal.preferredContactTypeId", required=False),
    FieldSpec("Expiration date", "expirationDate", date_only, required=False),
]

HOLDINGS_FIELDS: List[FieldSpec] = [
    FieldSpec("Holdings record id", "id"),
    FieldSpec("Version", "_version", required=False),
    FieldSpec("HRID", "hrid"),
    FieldSpec("Holdings type", "holdingsTypeId", required=False),
    FieldSpec("Former ids", "formerIds", join(";"), required=False),
    FieldSpec("Instance", "instanceId"),
    FieldSpec("Permanent location", "permanentLocationId"),
    FieldSpec("Temporary location", "temporaryLocationId", required=False),
    FieldSpec("Call number", "callNumber", required=False),
    FieldSpec("Discovery suppress", "discoverySuppress", required=False),
    FieldSpec("Notes", "notes", required=False),
]

# Status names arrive in sentence case; the export shows them title-cased.
# Single-word statuses pass through unchanged.
ITEM_STATUS_LABELS = {
    "Aged to lost": "Aged To Lost",
    "Awaiting delivery": "Awaiting Delivery",
    "Awaiting pickup": "Awaiting Pickup",
    "Checked out": "Checked Out",
    "Claimed returned": "Claimed Returned",
    "Declared lost": "Declared Lost",
    "In process": "In Process",
    "In transit": "In Transit",
    "Long missing": "Long Missing",
    "Lost and paid": "Lost And Paid",
    "On order": "On Order",
}

ITEM_FIELDS: List[FieldSpec] = [
    FieldSpec("Item id", "id"),
    FieldSpec("Version", "_version", required=False),
    FieldSpec("Item HRID", "hrid"),
    FieldSpec("Holdings Record Id", "holdingsRecordId"),
    FieldSpec("Former Ids", "formerIds", join(";"), required=False),
    FieldSpec("Barcode", "barcode", required=False),
    FieldSpec("Accession Number", "accessionNumber", required=False),
    FieldSpec("Item Level Call Number", "itemLevelCallNumber", required=False),
    FieldSpec("Status", "status.name", enum_label(ITEM_STATUS_LABELS)),
    FieldSpec("Material Type", "materialType.name"),
    FieldSpec("Permanent Loan Type", "permanentLoanType.name"),
    FieldSpec("Effective Location", "effectiveLocation.name", required=False),
    FieldSpec("Discovery Suppress", "discoverySuppress", required=False),
]

PURCHASE_ORDER_FIELDS: List[FieldSpec] = [
    FieldSpec("Order id", "id"),
    FieldSpec("PO number", "poNumber"),
    FieldSpec("Vendor", "vendor"),
    FieldSpec("Order type", "orderType", required=False),
    FieldSpec("Workflow status", "workflowStatus"),
    FieldSpec("Manual", "manualPo", required=False),
    FieldSpec("Notes", "notes", join(" | "), required=False),
    FieldSpec("Total items", "totalItems", required=False),
    FieldSpec("Date ordered", "dateOrdered", date_only, required=False),
    FieldSpec("Bill to", "billTo", truncate(64), required=False),
]

FIELD_SPECS: Dict[EntityType, List[FieldSpec]] = {
    EntityType.USER: USER_FIELDS,
    EntityType.HOLDINGS_RECORD: HOLDINGS_FIELDS,
    EntityType.ITEM: ITEM_FIELDS,
    EntityType.PURCHASE_ORDER: PURCHASE_ORDER_FIELDS,
}


def field_specs_for(entity_type: EntityType) -> List[FieldSpec]:
    return FIELD_SPECS[entity_type]
