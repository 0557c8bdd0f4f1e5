"""
Unit tests for tier resolution and set naming (rotator/backup/policy.py).
"""

from datetime import date

import pytest

from rotator.backup.policy import (
    EngineMode,
    RetentionPolicy,
    RotationTier,
    parse_tier_modes,
    resolve_plan,
    resolve_tier,
    set_name_suffix,
)


class TestResolveTier:
    """Test calendar classification of runs."""

    def test_first_of_month_is_monthly(self):
        """Test the 1st resolves to Monthly."""
        assert resolve_tier(date(2024, 3, 1)) is RotationTier.MONTHLY

    def test_first_of_month_on_monday_is_monthly(self):
        """Test Monthly wins over Weekly when the 1st is a Monday."""
        assert date(2024, 1, 1).weekday() == 0
        assert resolve_tier(date(2024, 1, 1)) is RotationTier.MONTHLY

    def test_monday_is_weekly(self):
        """Test a Monday that is not the 1st resolves to Weekly."""
        assert resolve_tier(date(2024, 1, 15)) is RotationTier.WEEKLY

    @pytest.mark.parametrize('day', [16, 17, 18, 19, 20, 21])
    def test_other_days_are_daily(self, day):
        """Test Tuesday to Sunday resolve to Daily."""
        assert resolve_tier(date(2024, 1, day)) is RotationTier.DAILY


class TestSetNameSuffix:
    """Test the calendar label of set names."""

    def test_monthly_suffix_uses_month_name(self):
        """Test Monthly suffix carries the English month name."""
        assert set_name_suffix(RotationTier.MONTHLY, date(2024, 3, 1)) == '-Monthly-March'

    def test_weekly_suffix_uses_padded_iso_week(self):
        """Test Weekly suffix carries the zero-padded ISO week."""
        assert set_name_suffix(RotationTier.WEEKLY, date(2024, 1, 15)) == '-Weekly-W03'

    def test_daily_suffix_uses_week_and_day_name(self):
        """Test Daily suffix carries ISO week and day name."""
        assert set_name_suffix(RotationTier.DAILY, date(2024, 1, 16)) == '-Daily-W03-Tuesday'

    def test_iso_week_at_year_boundary(self):
        """Test ISO week numbering, not calendar-year week numbering."""
        # Sunday 2021-01-03 belongs to ISO week 53 of 2020
        assert set_name_suffix(RotationTier.DAILY, date(2021, 1, 3)) == '-Daily-W53-Sunday'
        # Monday 2024-12-30 belongs to ISO week 1 of 2025
        assert set_name_suffix(RotationTier.WEEKLY, date(2024, 12, 30)) == '-Weekly-W01'


class TestRetentionPolicy:
    """Test RetentionPolicy validation."""

    def test_defaults(self):
        """Test default retention counts."""
        policy = RetentionPolicy()

        assert policy.count_for(RotationTier.MONTHLY) == 2
        assert policy.count_for(RotationTier.WEEKLY) == 4
        assert policy.count_for(RotationTier.DAILY) == 15

    def test_zero_is_allowed(self):
        """Test a retention of zero is valid."""
        policy = RetentionPolicy(monthly=0, weekly=0, daily=0)
        assert policy.count_for(RotationTier.DAILY) == 0

    @pytest.mark.parametrize('value', [-1, 1.5, '3', None, True])
    def test_invalid_counts_rejected(self, value):
        """Test negative and non-integer counts raise ValueError."""
        with pytest.raises(ValueError):
            RetentionPolicy(weekly=value)

    def test_from_settings(self, settings):
        """Test building the policy from settings."""
        settings['RETENTION_WEEKLY'] = 6
        policy = RetentionPolicy.from_settings(settings)

        assert policy.count_for(RotationTier.WEEKLY) == 6


class TestResolvePlan:
    """Test the combined plan."""

    def test_weekly_plan(self):
        """Test a Monday run plan."""
        plan = resolve_plan(date(2024, 1, 15), RetentionPolicy(), 'SRV01')

        assert plan.tier is RotationTier.WEEKLY
        assert plan.retention == 4
        assert plan.set_name == 'SRV01-Weekly-W03'
        assert plan.mode is EngineMode.BARE_METAL

    def test_daily_plan_is_system_state(self):
        """Test daily runs default to SystemState backups."""
        plan = resolve_plan(date(2024, 1, 16), RetentionPolicy(), 'SRV01')

        assert plan.mode is EngineMode.SYSTEM_STATE
        assert plan.set_name == 'SRV01-Daily-W03-Tuesday'

    def test_plan_is_deterministic(self):
        """Test the same date and configuration give the same plan."""
        policy = RetentionPolicy()
        assert resolve_plan(date(2024, 2, 1), policy, 'SRV01') == resolve_plan(date(2024, 2, 1), policy, 'SRV01')

    def test_custom_tier_modes(self):
        """Test tier modes from settings override the defaults."""
        modes = parse_tier_modes({'Daily': 'BareMetal'})
        plan = resolve_plan(date(2024, 1, 16), RetentionPolicy(), 'SRV01', modes)

        assert plan.mode is EngineMode.BARE_METAL
        assert modes[RotationTier.MONTHLY] is EngineMode.BARE_METAL

    def test_unknown_tier_mode_rejected(self):
        """Test unknown mode names raise ValueError."""
        with pytest.raises(ValueError):
            parse_tier_modes({'Daily': 'Incremental'})
