"""
Canonicalization of forecast records.

The store allows whole-record cloning, so several records can end up
sharing one identity key, or sharing (item, date) with a missing or
legacy key. Exactly one of them is kept as canonical; the others are
deprecated: their key is cleared so they drop out of future matching,
they are moved to the cancelled stage and annotated with a reason and
timestamp. Nothing is hard-deleted.

Election rules, in order:
1. Exact-key matches are preferred over legacy/missing-key candidates.
2. Protected records are preferred over editable ones (protected wins).
3. Records cloned through the store UI lose to non-clones.
4. ``canonical_sort_key``: oldest creation time first, records without
   a creation time last, then record id.
"""
import logging
from dataclasses import dataclass, field
from datetime import timezone
from typing import Callable, List, Optional, Sequence, Tuple

from forecast_sync.config import ForecastStages
from forecast_sync.dates import utc_now_iso
from forecast_sync.forecast.keys import is_legacy_key, parse_key
from forecast_sync.forecast.models import ForecastProps, ForecastRecord
from forecast_sync.store.base import Collection, RecordStore

logger = logging.getLogger(__name__)


def _id_sort(record_id: str) -> Tuple[int, int, str]:
    if record_id.isdigit():
        return (0, int(record_id), "")
    return (1, 0, record_id)


def canonical_sort_key(record: ForecastRecord) -> tuple:
    """
    Ordering used to elect the canonical record.

    Creation time ascending; records without a creation time sort after
    every timestamped record; ties are broken by record id (numeric ids
    numerically).
    """
    created = record.created_at
    if created is None:
        return (1, 0.0, _id_sort(record.id))
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return (0, created.timestamp(), _id_sort(record.id))


def elect_canonical(
    candidates: Sequence[ForecastRecord],
    expected_key: str,
    stages: ForecastStages,
) -> Optional[ForecastRecord]:
    """Pick the canonical record among candidates for one key."""
    if not candidates:
        return None

    pool = [c for c in candidates if c.key == expected_key] or list(candidates)

    protected = [c for c in pool if c.is_protected(stages)]
    if protected:
        pool = protected

    originals = [c for c in pool if not c.is_clone]
    if originals:
        pool = originals

    return min(pool, key=canonical_sort_key)


@dataclass
class CanonicalResult:
    """Outcome of canonicalizing one key."""
    key: str
    canonical: Optional[ForecastRecord] = None
    deprecated: List[str] = field(default_factory=list)
    protected_duplicates: List[str] = field(default_factory=list)


class CanonicalizationService:
    """Elects one canonical record per key and deprecates the rest."""

    def __init__(
        self,
        store: RecordStore,
        stages: ForecastStages,
        now: Callable[[], str] = utc_now_iso,
    ):
        self.store = store
        self.stages = stages
        self.now = now

    def candidates_for(
        self, records: Sequence[ForecastRecord], expected_key: str
    ) -> List[ForecastRecord]:
        """
        Records competing for ``expected_key``.

        Exact-key matches, plus records of the same item and expected
        date whose own key is missing or legacy.
        """
        parsed = parse_key(expected_key)
        out = []
        for record in records:
            if record.is_deprecated:
                continue
            if record.key == expected_key:
                out.append(record)
            elif (
                parsed is not None
                and is_legacy_key(record.key)
                and record.item_key == parsed.item_id
                and record.expected_ymd == parsed.ymd
            ):
                out.append(record)
        return out

    async def canonicalize(
        self, records: Sequence[ForecastRecord], expected_key: str
    ) -> CanonicalResult:
        """Elect the canonical record for a key and deprecate editable losers."""
        candidates = self.candidates_for(records, expected_key)
        result = CanonicalResult(key=expected_key)
        result.canonical = elect_canonical(candidates, expected_key, self.stages)
        if result.canonical is None or len(candidates) == 1:
            return result

        for record in candidates:
            if record.id == result.canonical.id:
                continue
            if record.is_protected(self.stages):
                # Protected duplicates are never mutated by this engine
                logger.warning(
                    f"Protected duplicate {record.id} for key {expected_key} "
                    f"(canonical {result.canonical.id}) left untouched"
                )
                result.protected_duplicates.append(record.id)
                continue
            await self.deprecate(record, f"duplicate_of:{result.canonical.id}")
            result.deprecated.append(record.id)

        return result

    async def archive_exact_key_collisions(self, expected_key: str) -> CanonicalResult:
        """
        Pre-create pass: re-read exact-key matches from the store and prune
        them down to the single canonical record.

        ``result.canonical`` is None when nothing holds the key yet.
        """
        found = await self.store.search(
            Collection.FORECASTS, {ForecastProps.KEY: expected_key}
        )
        records = [ForecastRecord(r) for r in found]
        records = [r for r in records if r.key == expected_key and not r.is_deprecated]
        if not records:
            return CanonicalResult(key=expected_key)
        return await self.canonicalize(records, expected_key)

    async def deprecate(self, record: ForecastRecord, reason: str) -> None:
        """Clear the key, move to the cancelled stage and record why."""
        properties = {
            ForecastProps.KEY: "",
            ForecastProps.STAGE: self.stages.cancelled_stage(record.pipeline),
            ForecastProps.DEPRECATED_REASON: reason,
            ForecastProps.DEPRECATED_AT: self.now(),
        }
        await self.store.update(Collection.FORECASTS, record.id, properties)
        logger.info(f"Deprecated forecast record {record.id} (key={record.key!r}): {reason}")
