"""
Rotation tier resolution.

Each run is classified from the calendar date (first match wins):
- 1st of the month  -> Monthly, set suffix "-Monthly-<MonthName>"
- Monday            -> Weekly,  set suffix "-Weekly-W<ISOWeek>"
- any other day     -> Daily,   set suffix "-Daily-W<ISOWeek>-<DayName>"
"""

from datetime import date
from enum import Enum
from typing import Dict, Mapping, NamedTuple, Optional

# Fixed English names so set names do not depend on the process locale
MONTH_NAMES = (
    'January', 'February', 'March', 'April', 'May', 'June',
    'July', 'August', 'September', 'October', 'November', 'December',
)
DAY_NAMES = ('Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday')


class RotationTier(str, Enum):
    MONTHLY = 'Monthly'
    WEEKLY = 'Weekly'
    DAILY = 'Daily'

    @property
    def label(self) -> str:
        """Marker every set name of this tier contains, e.g. '-Weekly-'."""
        return f"-{self.value}-"


class EngineMode(str, Enum):
    """Backup type submitted to the engine."""
    SYSTEM_STATE = 'SystemState'
    BARE_METAL = 'BareMetal'


DEFAULT_TIER_MODES = {
    RotationTier.MONTHLY: EngineMode.BARE_METAL,
    RotationTier.WEEKLY: EngineMode.BARE_METAL,
    RotationTier.DAILY: EngineMode.SYSTEM_STATE,
}


class RetentionPolicy:
    """Number of backup sets kept per tier."""

    def __init__(self, monthly: int = 2, weekly: int = 4, daily: int = 15):
        self._counts = {
            RotationTier.MONTHLY: monthly,
            RotationTier.WEEKLY: weekly,
            RotationTier.DAILY: daily,
        }

        for tier, count in self._counts.items():
            if not isinstance(count, int) or isinstance(count, bool) or count < 0:
                raise ValueError(f"Retention count for {tier.value} must be a non-negative integer, got {count!r}")

    @classmethod
    def from_settings(cls, settings) -> 'RetentionPolicy':
        return cls(
            monthly=settings['RETENTION_MONTHLY'],
            weekly=settings['RETENTION_WEEKLY'],
            daily=settings['RETENTION_DAILY'],
        )

    def count_for(self, tier: RotationTier) -> int:
        return self._counts[tier]

    def __repr__(self):
        counts = ', '.join(f"{tier.value}={count}" for tier, count in self._counts.items())
        return f'<RetentionPolicy {counts}>'


class RotationPlan(NamedTuple):
    """Everything a run derives from the calendar before touching disk."""
    tier: RotationTier
    retention: int
    set_name: str
    mode: EngineMode


def resolve_tier(when: date) -> RotationTier:
    if when.day == 1:
        return RotationTier.MONTHLY
    if when.weekday() == 0:
        return RotationTier.WEEKLY
    return RotationTier.DAILY


def set_name_suffix(tier: RotationTier, when: date) -> str:
    """
    Calendar label appended to the host identifier.

    Args:
        tier: Tier resolved for `when`
        when: Run date

    Returns:
        Suffix such as '-Monthly-March', '-Weekly-W11' or '-Daily-W11-Tuesday'
    """
    week = when.isocalendar()[1]

    if tier is RotationTier.MONTHLY:
        return f"-Monthly-{MONTH_NAMES[when.month - 1]}"
    if tier is RotationTier.WEEKLY:
        return f"-Weekly-W{week:02d}"
    return f"-Daily-W{week:02d}-{DAY_NAMES[when.weekday()]}"


def parse_tier_modes(raw: Optional[Mapping[str, str]]) -> Dict[RotationTier, EngineMode]:
    """
    Convert a {'Monthly': 'BareMetal', ...} mapping from settings.

    Tiers missing from `raw` keep their default mode.

    Raises:
        ValueError: On an unknown tier or mode name
    """
    modes = dict(DEFAULT_TIER_MODES)
    for tier_name, mode_name in (raw or {}).items():
        modes[RotationTier(tier_name)] = EngineMode(mode_name)
    return modes


def resolve_plan(
    when: date,
    policy: RetentionPolicy,
    host_id: str,
    tier_modes: Optional[Mapping[RotationTier, EngineMode]] = None
) -> RotationPlan:
    """
    Classify a run and name its backup set.

    Pure function of the date and configuration.
    """
    tier = resolve_tier(when)
    modes = tier_modes or DEFAULT_TIER_MODES

    return RotationPlan(
        tier=tier,
        retention=policy.count_for(tier),
        set_name=f"{host_id}{set_name_suffix(tier, when)}",
        mode=modes[tier],
    )
