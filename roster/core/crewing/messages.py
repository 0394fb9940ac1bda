# roster/core/crewing/messages.py
from __future__ import annotations

from datetime import datetime
from typing import Iterable

from roster.core.crewing.domain import Candidate, Position, ReplyClass


def format_date_range(dates: Iterable[str]) -> str:
    """
    Collapse shoot days (MM/dd/yy) into a short range.

    One day → "Mar 3"; same month → "Mar 3 - 5"; otherwise "Mar 30 - Apr 2".
    Unparsable entries are ignored.
    """
    parsed = []
    for value in dates:
        try:
            parsed.append(datetime.strptime(value.strip(), "%m/%d/%y"))
        except (AttributeError, ValueError):
            continue
    if not parsed:
        return ""

    parsed.sort()
    start, end = parsed[0], parsed[-1]
    start_text = f"{start:%b} {start.day}"

    if start == end:
        return start_text
    if (start.year, start.month) == (end.year, end.month):
        return f"{start_text} - {end.day}"
    return f"{start_text} - {end:%b} {end.day}"


def outreach_text(candidate: Candidate, position: Position, short_id: str, site_url: str) -> str:
    when = format_date_range(position.shoot_dates)
    shoot = f"a shoot {when}" if when else "a shoot"
    return (
        f"Hey {candidate.first_name}, we want to hire you for {shoot} as a {position.title}.\n\n"
        f"Confirm availability & see more details @ {site_url.rstrip('/')}/avail/{short_id}\n\n"
        f"Not available? Reply NO\n\n"
        f"- {position.company_name}"
    )


def outreach_subject(position: Position) -> str:
    return f"Are you available? {position.title} with {position.company_name}"


def acknowledgement_text(reply: ReplyClass, company_name: str) -> str:
    if reply is ReplyClass.POSITIVE:
        return f"Great, we've confirmed your availability\n\n- {company_name}"
    if reply is ReplyClass.NEGATIVE:
        return f"No worries, hope to work with you soon.\n\n- {company_name}"
    raise ValueError("No acknowledgement for an unknown reply")
