"""
Schedule evaluation tests - time windows, cron expressions and failure handling.
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import patch

from gateway.core.schedule import (
    is_rule_active,
    is_within_time_window,
    matches_cron_expression,
    parse_cron_field,
    from_epoch_ms,
    to_epoch_ms,
)
from gateway.core.schema import Rule, RuleSchedule, TimeWindow

# 2024-01-07 is a Sunday
SUNDAY = datetime(2024, 1, 7, 12, 0, tzinfo=timezone.utc)
MONDAY_0930 = datetime(2024, 1, 8, 9, 30, tzinfo=timezone.utc)


def make_rule(schedule=None, enabled=True):
    return Rule(id=1, pattern="^ls", action="AUTO_ACCEPT", priority=0, enabled=enabled,
                created_at=0, schedule=schedule or RuleSchedule())


def windows_rule(*windows, tz=None):
    return make_rule(RuleSchedule(type="time_windows", windows=list(windows), timezone=tz))


def cron_rule(expression, tz=None):
    return make_rule(RuleSchedule(type="cron", cron_expression=expression, timezone=tz))


class TestBasicActivity:

    def test_always_schedule_is_active(self):
        assert is_rule_active(make_rule(), MONDAY_0930) == True

    def test_disabled_rule_is_inactive(self):
        assert is_rule_active(make_rule(enabled=False), MONDAY_0930) == False

    def test_naive_datetime_treated_as_utc(self):
        rule = windows_rule(TimeWindow(1, 9, 0, 10, 0))
        assert is_rule_active(rule, datetime(2024, 1, 8, 9, 30)) == True


class TestTimeWindows:

    def test_inside_window(self):
        rule = windows_rule(TimeWindow(1, 9, 0, 17, 0))
        assert is_rule_active(rule, MONDAY_0930) == True

    def test_bounds_are_inclusive(self):
        window = TimeWindow(1, 9, 0, 17, 0)
        assert is_within_time_window(window, datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc))
        assert is_within_time_window(window, datetime(2024, 1, 8, 17, 0, tzinfo=timezone.utc))
        assert not is_within_time_window(window, datetime(2024, 1, 8, 17, 1, tzinfo=timezone.utc))
        assert not is_within_time_window(window, datetime(2024, 1, 8, 8, 59, tzinfo=timezone.utc))

    def test_wrong_day(self):
        rule = windows_rule(TimeWindow(2, 9, 0, 17, 0))
        assert is_rule_active(rule, MONDAY_0930) == False

    def test_any_window_matches(self):
        rule = windows_rule(TimeWindow(3, 0, 0, 23, 59), TimeWindow(1, 9, 0, 10, 0))
        assert is_rule_active(rule, MONDAY_0930) == True

    def test_window_spanning_midnight_stays_on_its_day(self):
        # Friday 22:00-02:00 covers Friday 00:00-02:00 and 22:00-23:59
        window = TimeWindow(5, 22, 0, 2, 0)
        assert is_within_time_window(window, datetime(2024, 1, 12, 23, 30, tzinfo=timezone.utc))
        assert is_within_time_window(window, datetime(2024, 1, 12, 1, 0, tzinfo=timezone.utc))
        assert is_within_time_window(window, datetime(2024, 1, 12, 2, 0, tzinfo=timezone.utc))
        assert is_within_time_window(window, datetime(2024, 1, 12, 22, 0, tzinfo=timezone.utc))
        assert not is_within_time_window(window, datetime(2024, 1, 12, 3, 0, tzinfo=timezone.utc))
        assert not is_within_time_window(window, datetime(2024, 1, 12, 21, 0, tzinfo=timezone.utc))
        assert not is_within_time_window(window, datetime(2024, 1, 13, 1, 0, tzinfo=timezone.utc))

    def test_monday_late_window_early_hours(self):
        window = TimeWindow(1, 22, 0, 2, 0)
        assert is_within_time_window(window, datetime(2024, 1, 1, 1, 0, tzinfo=timezone.utc))
        assert not is_within_time_window(window, datetime(2024, 1, 2, 1, 0, tzinfo=timezone.utc))

    def test_window_timezone(self):
        # 14:30 UTC is 09:30 in New York during winter
        rule = windows_rule(TimeWindow(1, 9, 0, 10, 0, timezone="America/New_York"))
        assert is_rule_active(rule, datetime(2024, 1, 8, 14, 30, tzinfo=timezone.utc)) == True
        assert is_rule_active(rule, MONDAY_0930) == False

    def test_schedule_timezone_used_when_window_has_none(self):
        # 00:30 UTC Monday is 09:30 Monday in Tokyo
        rule = windows_rule(TimeWindow(1, 9, 0, 10, 0), tz="Asia/Tokyo")
        assert is_rule_active(rule, datetime(2024, 1, 8, 0, 30, tzinfo=timezone.utc)) == True

    def test_window_timezone_overrides_schedule_timezone(self):
        rule = windows_rule(TimeWindow(1, 9, 0, 10, 0, timezone="UTC"), tz="Asia/Tokyo")
        assert is_rule_active(rule, MONDAY_0930) == True

    def test_no_windows_means_inactive(self):
        assert is_rule_active(windows_rule(), MONDAY_0930) == False


class TestCron:

    def test_business_hours_every_quarter(self):
        assert matches_cron_expression("*/15 9-17 * * 1-5", datetime(2024, 1, 8, 9, 30, tzinfo=timezone.utc))
        assert not matches_cron_expression("*/15 9-17 * * 1-5", datetime(2024, 1, 8, 9, 31, tzinfo=timezone.utc))
        assert not matches_cron_expression("*/15 9-17 * * 1-5", datetime(2024, 1, 13, 9, 30, tzinfo=timezone.utc))

    def test_all_stars_always_match(self):
        assert matches_cron_expression("* * * * *", MONDAY_0930)

    def test_seven_is_sunday(self):
        assert matches_cron_expression("0 12 * * 7", SUNDAY)
        assert matches_cron_expression("0 12 * * 0", SUNDAY)

    def test_comma_lists(self):
        assert matches_cron_expression("0,30 * * * *", MONDAY_0930)
        assert not matches_cron_expression("0,45 * * * *", MONDAY_0930)

    def test_day_of_month_and_month(self):
        assert matches_cron_expression("* * 8 1 *", MONDAY_0930)
        assert not matches_cron_expression("* * 9 1 *", MONDAY_0930)
        assert not matches_cron_expression("* * 8 2 *", MONDAY_0930)

    def test_cron_timezone(self):
        # 09:30 UTC is 18:30 in Tokyo
        assert matches_cron_expression("30 18 * * *", MONDAY_0930, "Asia/Tokyo")
        assert not matches_cron_expression("30 9 * * *", MONDAY_0930, "Asia/Tokyo")

    def test_wrong_field_count_raises(self):
        with pytest.raises(ValueError, match="expected 5 parts"):
            matches_cron_expression("* * * *", MONDAY_0930)

    def test_cron_rule_active(self):
        assert is_rule_active(cron_rule("30 9 * * 1"), MONDAY_0930) == True
        assert is_rule_active(cron_rule("31 9 * * 1"), MONDAY_0930) == False


class TestParseCronField:

    def test_star(self):
        assert parse_cron_field("*", 0, 6) == {0, 1, 2, 3, 4, 5, 6}

    def test_literal(self):
        assert parse_cron_field("5", 0, 59) == {5}

    def test_range(self):
        assert parse_cron_field("2-4", 0, 59) == {2, 3, 4}

    def test_star_step(self):
        assert parse_cron_field("*/20", 0, 59) == {0, 20, 40}

    def test_star_step_on_one_based_fields(self):
        # Divisibility, not an offset from the field's lower bound
        assert parse_cron_field("*/2", 1, 31) == set(range(2, 32, 2))
        assert parse_cron_field("*/3", 1, 12) == {3, 6, 9, 12}
        assert matches_cron_expression("* * */2 * *", datetime(2024, 1, 2, 9, 30, tzinfo=timezone.utc))
        assert not matches_cron_expression("* * */2 * *", datetime(2024, 1, 3, 9, 30, tzinfo=timezone.utc))

    def test_range_step(self):
        assert parse_cron_field("1-10/3", 0, 59) == {1, 4, 7, 10}

    def test_start_step_runs_to_top(self):
        assert parse_cron_field("5/20", 0, 59) == {5, 25, 45}

    def test_list_of_mixed_terms(self):
        assert parse_cron_field("1,3-4,*/30", 0, 59) == {0, 1, 3, 4, 30}

    def test_sunday_seven(self):
        assert parse_cron_field("7", 0, 6, allow_sunday_7=True) == {0}
        assert parse_cron_field("5-7", 0, 6, allow_sunday_7=True) == {5, 6, 0}

    def test_seven_rejected_outside_day_of_week(self):
        with pytest.raises(ValueError):
            parse_cron_field("7", 0, 6)

    @pytest.mark.parametrize("expr", ["", "a", "60", "5-2", "*/0", "1,,2", "-1"])
    def test_malformed_raises(self, expr):
        with pytest.raises(ValueError):
            parse_cron_field(expr, 0, 59)


class TestScheduleFailures:
    """Schedules that cannot be evaluated make the rule inactive and are logged."""

    @patch('gateway.core.schedule.log_schedule_error')
    def test_malformed_cron_is_inactive(self, mock_log):
        assert is_rule_active(cron_rule("99 * * * *"), MONDAY_0930) == False
        mock_log.assert_called_once()

    @patch('gateway.core.schedule.log_schedule_error')
    def test_missing_cron_expression_is_inactive(self, mock_log):
        assert is_rule_active(cron_rule(None), MONDAY_0930) == False
        mock_log.assert_called_once()

    @patch('gateway.core.schedule.log_schedule_error')
    def test_unknown_timezone_is_inactive(self, mock_log):
        rule = windows_rule(TimeWindow(1, 0, 0, 23, 59, timezone="Mars/Olympus_Mons"))
        assert is_rule_active(rule, MONDAY_0930) == False
        mock_log.assert_called_once()

    @patch('gateway.core.schedule.log_schedule_error')
    def test_malformed_window_is_inactive(self, mock_log):
        rule = windows_rule(TimeWindow(1, 25, 0, 26, 0))
        assert is_rule_active(rule, MONDAY_0930) == False
        mock_log.assert_called_once()

    @patch('gateway.core.schedule.log_schedule_error')
    def test_unknown_schedule_type_is_inactive(self, mock_log):
        rule = make_rule(RuleSchedule(type="lunar"))
        assert is_rule_active(rule, MONDAY_0930) == False
        mock_log.assert_called_once()


def test_epoch_conversions_round_trip():
    ms = to_epoch_ms(MONDAY_0930)
    assert from_epoch_ms(ms) == MONDAY_0930
