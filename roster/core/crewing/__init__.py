# roster/core/crewing/__init__.py
"""
Crew-availability contact workflow.

- ``domain``: positions, candidates, contact attempts, outbound messages
- ``classifier``: inbound reply text → Positive / Negative / Unknown
- ``messages``: outreach and acknowledgement texts
- ``contact_attempt``: the contact-attempt state machine and reply handling
- ``queue_advancer``: picks the next untried candidate for a position
- ``jobs``: job handlers wiring the above to the durable job queue

Every status change is a conditional update on the expected prior
status, so a deadline wake-up and a reply racing on the same attempt
resolve to exactly one winner.
"""
