"""
Retention policy for snapshots.

select() is a pure function deciding which snapshots survive: snapshots are
bucketed by calendar day, ISO week and calendar month (in the timezone of
`now`), the newest snapshot of each bucket within the configured number of
most recent periods is kept, and the newest snapshot overall is always kept.

RetentionManager applies a selection to a repository: it forgets the pruned
snapshots and garbage-collects chunks nobody references any more.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence

from .errors import InvalidRetentionRule
from .snapshots import Snapshot, SnapshotManager
from .storage import ContentStore, GCResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionRule:
    """
    How many snapshots to keep per cadence.

    Attributes:
        keep_daily: Keep the newest snapshot of each of the N most recent days with snapshots
        keep_weekly: Keep the newest snapshot of each of the N most recent ISO weeks with snapshots
        keep_monthly: Keep the newest snapshot of each of the N most recent months with snapshots
        keep_last: Keep the N newest snapshots outright
    """

    keep_daily: int = 0
    keep_weekly: int = 0
    keep_monthly: int = 0
    keep_last: int = 0

    def __post_init__(self):
        for name in ('keep_daily', 'keep_weekly', 'keep_monthly', 'keep_last'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidRetentionRule(f"{name} must be an integer, got {value!r}")
            if value < 0:
                raise InvalidRetentionRule(f"{name} must not be negative, got {value}")

    @classmethod
    def from_config(cls, config: Mapping) -> 'RetentionRule':
        """
        Build a rule from RETENTION_* configuration keys.

        Raises:
            InvalidRetentionRule: If a value is not a non-negative integer
        """
        values = {}
        for name, key in (
            ('keep_daily', 'RETENTION_KEEP_DAILY'),
            ('keep_weekly', 'RETENTION_KEEP_WEEKLY'),
            ('keep_monthly', 'RETENTION_KEEP_MONTHLY'),
            ('keep_last', 'RETENTION_KEEP_LAST'),
        ):
            raw = config.get(key)
            if raw is None or raw == '':
                continue
            try:
                values[name] = int(raw)
            except (TypeError, ValueError):
                raise InvalidRetentionRule(f"{key} must be an integer, got {raw!r}")
        return cls(**values)

    @property
    def is_empty(self) -> bool:
        return not (self.keep_daily or self.keep_weekly or self.keep_monthly or self.keep_last)


@dataclass(frozen=True)
class RetentionResult:
    """Outcome of a retention selection."""

    keep: FrozenSet[str]
    prune: FrozenSet[str]
    reasons: Dict[str, List[str]] = field(default_factory=dict)


@dataclass(frozen=True)
class PruneResult:
    """Outcome of applying a retention rule to a repository."""

    kept: FrozenSet[str]
    pruned: FrozenSet[str]
    gc: Optional[GCResult]


def _monday(day: date) -> date:
    return day - timedelta(days=day.weekday())


def _day_bucket(created: datetime, now: datetime):
    day = created.date()
    return day, (now.date() - day).days


def _week_bucket(created: datetime, now: datetime):
    iso_year, iso_week, _ = created.isocalendar()
    age = (_monday(now.date()) - _monday(created.date())).days // 7
    return (iso_year, iso_week), age


def _month_bucket(created: datetime, now: datetime):
    age = (now.year - created.year) * 12 + (now.month - created.month)
    return (created.year, created.month), age


CADENCES: Sequence[tuple] = (
    ('daily', 'keep_daily', _day_bucket),
    ('weekly', 'keep_weekly', _week_bucket),
    ('monthly', 'keep_monthly', _month_bucket),
)


def select(snapshots: Sequence[Snapshot], rule: RetentionRule, now: datetime) -> RetentionResult:
    """
    Decide which snapshots to keep and which to prune.

    Args:
        snapshots: Snapshots to consider, in any order
        rule: Retention rule
        now: Reference time; naive values are taken as UTC

    Returns:
        RetentionResult with disjoint keep/prune id sets and the reasons each
        kept snapshot survived
    """
    if not snapshots:
        return RetentionResult(keep=frozenset(), prune=frozenset())

    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    def localized(snapshot: Snapshot) -> datetime:
        created = snapshot.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return created.astimezone(now.tzinfo)

    # Newest first; equal timestamps resolve to the higher id
    newest_first = sorted(snapshots, key=lambda s: (localized(s), s.id), reverse=True)
    reasons: Dict[str, List[str]] = {}

    def keep(snapshot: Snapshot, reason: str):
        reasons.setdefault(snapshot.id, []).append(reason)

    keep(newest_first[0], 'newest')

    for snapshot in newest_first[:rule.keep_last]:
        keep(snapshot, 'last')

    for cadence, attribute, bucket_of in CADENCES:
        limit = getattr(rule, attribute)
        if not limit:
            continue

        # The N most recent periods holding a snapshot; periods after now are skipped
        seen = set()
        for snapshot in newest_first:
            if len(seen) >= limit:
                break
            bucket, age = bucket_of(localized(snapshot), now)
            if age < 0 or bucket in seen:
                continue
            seen.add(bucket)
            keep(snapshot, f"{cadence} {_describe(bucket)}")

    keep_ids = frozenset(reasons)
    prune_ids = frozenset(s.id for s in snapshots) - keep_ids
    return RetentionResult(keep=keep_ids, prune=prune_ids, reasons=reasons)


def _describe(bucket) -> str:
    if isinstance(bucket, date):
        return bucket.isoformat()
    return '-'.join(f"{part:02d}" for part in bucket)


class RetentionManager:
    """
    Applies retention rules to a repository.

    Forgets snapshots selected for pruning, then garbage-collects chunks that
    are no longer referenced.
    """

    def __init__(self, snapshots: SnapshotManager, store: ContentStore,
                 clock: Callable[[], datetime] = None):
        """
        Initialize retention manager.

        Args:
            snapshots: Snapshot manager of the repository
            store: Content store of the repository
            clock: Source of the current time when prune() gets no `now`
        """
        self.snapshots = snapshots
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def plan(self, rule: RetentionRule, now: Optional[datetime] = None) -> RetentionResult:
        """Selection for the repository's current snapshots, without changing anything."""
        return select(self.snapshots.list(), rule, now or self.clock())

    def prune(self, rule: RetentionRule, now: Optional[datetime] = None,
              collect_garbage: bool = True) -> PruneResult:
        """
        Enforce a retention rule.

        Args:
            rule: Retention rule
            now: Reference time (defaults to the manager's clock)
            collect_garbage: Run garbage collection after forgetting snapshots

        Returns:
            PruneResult with kept and pruned ids and the GC summary
        """
        result = self.plan(rule, now)
        logger.info(f"Retention keeps {len(result.keep)} snapshot(s), prunes {len(result.prune)}")

        for snapshot_id in sorted(result.keep):
            logger.debug(f"Keeping {snapshot_id[:8]}: {', '.join(result.reasons[snapshot_id])}")

        if result.prune:
            self.snapshots.forget(result.prune)

        gc_result = self.store.garbage_collect() if collect_garbage and result.prune else None

        return PruneResult(kept=result.keep, pruned=result.prune, gc=gc_result)
