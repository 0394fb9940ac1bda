# tests/test_messages.py
"""Tests for outbound message text: outreach, acknowledgements, call cards, pushes"""
import pytest

from roster.core.crewing.domain import Candidate, HiringStatus, Position, ReplyClass
from roster.core.crewing.messages import acknowledgement_text, format_date_range, outreach_text
from roster.core.notifications.call_cards import call_card_sms_text, member_call_time
from roster.core.notifications.call_times import (
    adjust_call_time,
    describe_push,
    format_call_time,
    format_full_date,
    parse_call_time,
)
from roster.core.notifications.domain import CallCardPush, CallSheet, CallSheetMember, MemberStatus
from roster.core.notifications.push import pushed_text


def _position(**overrides) -> Position:
    values = dict(
        id=1, project_id="p1", title="Gaffer", quantity=1, hiring_status=HiringStatus.OPEN,
        company_name="Acme Films", shoot_dates=["03/03/26", "03/05/26"],
    )
    values.update(overrides)
    return Position(**values)


def _member(**overrides) -> CallSheetMember:
    values = dict(
        id="m1", call_sheet_id="cs-1", name="Sam", status=MemberStatus.PENDING, short_id="abc",
        phone="+15550000100",
    )
    values.update(overrides)
    return CallSheetMember(**values)


SHEET = CallSheet(
    id="cs-1", company_id="co-1", company_name="Acme Films", job_name="Night Shoot",
    full_date="03/03/26", general_crew_call="7am",
)


class TestDateRange:
    def test_single_day(self):
        assert format_date_range(["03/03/26"]) == "Mar 3"

    def test_same_month(self):
        assert format_date_range(["03/05/26", "03/03/26"]) == "Mar 3 - 5"

    def test_across_months(self):
        assert format_date_range(["03/30/26", "04/02/26"]) == "Mar 30 - Apr 2"

    def test_unparsable_entries_ignored(self):
        assert format_date_range(["soon", "03/03/26"]) == "Mar 3"
        assert format_date_range([]) == ""


class TestOutreachText:
    def test_outreach_message(self):
        candidate = Candidate(id=1, position_id=1, crew_member_id=9, priority=1, first_name="Dana")
        text = outreach_text(candidate, _position(), "xyz", "https://crew.example.com/")

        assert text.startswith("Hey Dana, we want to hire you for a shoot Mar 3 - 5 as a Gaffer.")
        assert "https://crew.example.com/avail/xyz" in text
        assert "Not available? Reply NO" in text
        assert text.endswith("- Acme Films")

    def test_outreach_without_dates(self):
        candidate = Candidate(id=1, position_id=1, crew_member_id=9, priority=1, first_name="Dana")
        text = outreach_text(candidate, _position(shoot_dates=[]), "xyz", "https://crew.example.com")
        assert "for a shoot as a Gaffer." in text


class TestAcknowledgement:
    def test_positive(self):
        assert acknowledgement_text(ReplyClass.POSITIVE, "Acme Films") == (
            "Great, we've confirmed your availability\n\n- Acme Films"
        )

    def test_negative(self):
        assert acknowledgement_text(ReplyClass.NEGATIVE, "Acme Films") == (
            "No worries, hope to work with you soon.\n\n- Acme Films"
        )

    def test_unknown_has_no_acknowledgement(self):
        with pytest.raises(ValueError):
            acknowledgement_text(ReplyClass.UNKNOWN, "Acme Films")


class TestCallTimes:
    @pytest.mark.parametrize("value,expected", [
        ("7am", (7, 0)),
        ("7:30 PM", (19, 30)),
        ("07:00", (7, 0)),
        ("12:00 AM", (0, 0)),
        ("12pm", (12, 0)),
        ("7", None),
        ("25:00", None),
        ("13pm", None),
        ("", None),
        ("TBD", None),
    ])
    def test_parse(self, value, expected):
        assert parse_call_time(value) == expected

    def test_format_prefers_member_time(self):
        assert format_call_time("6:15am", "7am") == "6:15 AM"

    def test_format_falls_back_to_general_call(self):
        assert format_call_time(None, "7am") == "7:00 AM"

    def test_format_passes_unparsable_through(self):
        assert format_call_time("after lunch", "7am") == "after lunch"

    def test_adjust_wraps_past_midnight(self):
        assert adjust_call_time("11:30 PM", 1) == "12:30 AM"

    def test_adjust_minutes(self):
        assert adjust_call_time("7:00 AM", 0, 45) == "7:45 AM"

    def test_adjust_noop(self):
        assert adjust_call_time("7:00 AM") == "7:00 AM"
        assert adjust_call_time("after lunch", 1) == "after lunch"

    def test_full_date(self):
        assert format_full_date("03/03/26") == "Tue, Mar 3"
        assert format_full_date("next week") == "next week"

    @pytest.mark.parametrize("hours,minutes,expected", [
        (1, 30, "1 hour and 30 minutes"),
        (2, 0, "2 hours"),
        (0, 45, "45 minutes"),
        (0, 1, "1 minute"),
    ])
    def test_describe_push(self, hours, minutes, expected):
        assert describe_push(hours, minutes) == expected


class TestCallCardText:
    def test_call_card_sms(self):
        text = call_card_sms_text(_member(), SHEET, "7:00 AM", "https://crew.example.com")
        assert text == (
            "Hey Sam, your call time for Night Shoot is 7:00 AM on Tue, Mar 3.\n\n"
            "View details and confirm: https://crew.example.com/c/abc\n"
        )

    def test_member_call_time_applies_push(self):
        push = CallCardPush(id="p1", call_sheet_id="cs-1", hours=1, minutes=30)
        assert member_call_time(_member(), SHEET, push) == "8:30 AM"
        assert member_call_time(_member(call_time="6pm"), SHEET, None) == "6:00 PM"

    def test_pushed_text(self):
        push = CallCardPush(id="p1", call_sheet_id="cs-1", hours=1, minutes=30)
        text = pushed_text(_member(), push, "https://crew.example.com")
        assert text == (
            "Hey Sam, ALL CALLS PUSHED BY 1 hour and 30 minutes\n\n"
            "--\nClick here to confirm update:\nhttps://crew.example.com/call/abc"
        )
