"""
Record resolvers: fetch the domain entity behind each identifier.

One resolver variant exists per entity kind. Each declares which identifier
types it accepts and which upstream field answers them; the variant is chosen
from `RESOLVERS` when the job is built.

Classification:
    no match             -> SKIP (NotFoundError)
    more than one match  -> SKIP (duplicate entry) for single-valued identifier
                            types; every match for `multi_valued` ones
    UpstreamError        -> FATAL, unless the retry policy allows retrying
                            transient errors and an attempt succeeds
"""

import asyncio
from abc import ABC
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional, Type

from core.config import settings
from core.exceptions import ConfigurationError, NotFoundError, UpstreamError
from bulk_export.lookup import RecordLookup
from bulk_export.results import StageResult
from models.base import EntityType, IdentifierType
from schemas.records import IdentifierRecord, ResolvedEntity
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry policy for transient upstream errors.

    `max_attempts` counts the first call; no jitter is applied.
    """

    retryable: bool = False
    max_attempts: int = 3
    delay: float = 0.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            retryable=settings.LOOKUP_RETRYABLE,
            max_attempts=settings.LOOKUP_MAX_RETRIES,
            delay=settings.LOOKUP_RETRY_DELAY
        )


class RecordResolver(ABC):
    """
    Base resolver.

    Subclasses only declare `entity_type`, `lookup_fields` and, where an
    identifier names a parent rather than one record, `multi_valued`;
    fetching, retrying and classification are shared.
    """

    entity_type: EntityType
    lookup_fields: Dict[IdentifierType, str] = {}
    multi_valued: FrozenSet[IdentifierType] = frozenset()

    def __init__(
        self,
        lookup: RecordLookup,
        identifier_type: IdentifierType,
        retry_policy: Optional[RetryPolicy] = None
    ):
        if identifier_type not in self.lookup_fields:
            raise ConfigurationError(
                f"{self.entity_type.value} cannot be resolved by {identifier_type.value}",
                context={
                    "entity_type": self.entity_type.value,
                    "identifier_type": identifier_type.value,
                    "supported": ",".join(t.value for t in self.lookup_fields)
                }
            )
        self.lookup = lookup
        self.identifier_type = identifier_type
        self.field = self.lookup_fields[identifier_type]
        self.expands = identifier_type in self.multi_valued
        self.retry_policy = retry_policy or RetryPolicy()
        self._cache: Dict[str, List[Dict[str, Any]]] = {}

    async def _with_retries(self, call, *args):
        policy = self.retry_policy
        attempts = max(1, policy.max_attempts) if policy.retryable else 1
        for attempt in range(1, attempts + 1):
            try:
                return await call(*args)
            except UpstreamError as e:
                if not e.transient or attempt == attempts:
                    e.context["attempts"] = attempt
                    raise
                logger.warning(
                    f"Transient lookup failure for {self.entity_type.value} "
                    f"(attempt {attempt}/{attempts}): {e.message}"
                )
                if policy.delay:
                    await asyncio.sleep(policy.delay)

    async def prefetch(self, records: List[IdentifierRecord]):
        """
        Warm the per-chunk cache with one batch query.

        Failures are logged and leave the cache empty so that `resolve`
        falls back to single lookups and classifies errors per item.
        """
        self._cache = {}
        values = list(dict.fromkeys(r.value for r in records))
        if not values:
            return
        try:
            found = await self._with_retries(
                self.lookup.find_many, self.entity_type, self.field, values
            )
        except UpstreamError as e:
            logger.warning(f"Prefetch failed, resolving one by one: {e.message}")
            return

        cache: Dict[str, List[Dict[str, Any]]] = {v: [] for v in values}
        for entity in found:
            for key in self._keys_of(entity):
                if key in cache:
                    cache[key].append(entity)
        self._cache = cache

    def clear_cache(self):
        self._cache = {}

    def _keys_of(self, entity: Dict[str, Any]) -> List[str]:
        value: Any = entity
        for part in self.field.split("."):
            if not isinstance(value, dict):
                return []
            value = value.get(part)
        if value is None:
            return []
        if isinstance(value, list):
            return [str(v) for v in value]
        return [str(value)]

    async def resolve(self, record: IdentifierRecord) -> StageResult[List[ResolvedEntity]]:
        """
        Resolve one identifier to its entities.

        Single-valued identifier types yield exactly one entity; multi-valued
        ones yield every match in lookup order.
        """
        context = {
            "entity_type": self.entity_type.value,
            "identifier_type": self.identifier_type.value,
            "identifier": record.value,
            "line_number": record.line_number,
        }

        if record.value in self._cache:
            matches = self._cache[record.value]
        else:
            try:
                matches = await self._with_retries(
                    self.lookup.find, self.entity_type, self.field, record.value
                )
            except UpstreamError as e:
                e.context.update(context)
                return StageResult.fatal(e)

        if not matches:
            return StageResult.skip(NotFoundError("No match found", context=context))
        if len(matches) > 1 and not self.expands:
            return StageResult.skip(NotFoundError("Duplicate entry", context=context))

        return StageResult.ok([
            ResolvedEntity(entity_type=self.entity_type, identifier=record, data=match)
            for match in matches
        ])


class UserResolver(RecordResolver):
    entity_type = EntityType.USER
    lookup_fields = {
        IdentifierType.ID: "id",
        IdentifierType.BARCODE: "barcode",
        IdentifierType.USER_NAME: "username",
        IdentifierType.EXTERNAL_SYSTEM_ID: "externalSystemId",
    }


class HoldingsResolver(RecordResolver):
    entity_type = EntityType.HOLDINGS_RECORD
    lookup_fields = {
        IdentifierType.ID: "id",
        IdentifierType.HRID: "hrid",
        IdentifierType.INSTANCE_ID: "instanceId",
    }
    multi_valued = frozenset({IdentifierType.INSTANCE_ID})


class ItemResolver(RecordResolver):
    entity_type = EntityType.ITEM
    lookup_fields = {
        IdentifierType.ID: "id",
        IdentifierType.BARCODE: "barcode",
        IdentifierType.HRID: "hrid",
        IdentifierType.FORMER_IDS: "formerIds",
        IdentifierType.ACCESSION_NUMBER: "accessionNumber",
        IdentifierType.HOLDINGS_RECORD_ID: "holdingsRecordId",
    }
    multi_valued = frozenset({IdentifierType.HOLDINGS_RECORD_ID})


class PurchaseOrderResolver(RecordResolver):
    entity_type = EntityType.PURCHASE_ORDER
    lookup_fields = {
        IdentifierType.ID: "id",
        IdentifierType.PO_NUMBER: "poNumber",
    }


RESOLVERS: Dict[EntityType, Type[RecordResolver]] = {
    EntityType.USER: UserResolver,
    EntityType.HOLDINGS_RECORD: HoldingsResolver,
    EntityType.ITEM: ItemResolver,
    EntityType.PURCHASE_ORDER: PurchaseOrderResolver,
}
