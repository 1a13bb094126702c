from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class EntityType(str, enum.Enum):
    """Domain record kinds that can be exported"""
    USER = "USER"
    HOLDINGS_RECORD = "HOLDINGS_RECORD"
    ITEM = "ITEM"
    PURCHASE_ORDER = "PURCHASE_ORDER"


class IdentifierType(str, enum.Enum):
    """Kinds of identifiers accepted in uploaded files"""
    ID = "ID"
    BARCODE = "BARCODE"
    HRID = "HRID"
    USER_NAME = "USER_NAME"
    EXTERNAL_SYSTEM_ID = "EXTERNAL_SYSTEM_ID"
    FORMER_IDS = "FORMER_IDS"
    ACCESSION_NUMBER = "ACCESSION_NUMBER"
    HOLDINGS_RECORD_ID = "HOLDINGS_RECORD_ID"
    INSTANCE_ID = "INSTANCE_ID"
    PO_NUMBER = "PO_NUMBER"


class OutputFormat(str, enum.Enum):
    """Output encodings produced by the streaming writer"""
    CSV = "csv"
    JSON = "json"

    @property
    def extension(self) -> str:
        return f".{self.value}"


class JobStatus(str, enum.Enum):
    """Job status (IN_PROGRESS only appears in the status store)"""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunnerState(str, enum.Enum):
    """States of the chunk runner"""
    IDLE = "idle"
    READING = "reading"
    RESOLVING = "resolving"
    TRANSFORMING = "transforming"
    SKIPPING = "skipping"
    COMMITTING = "committing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
