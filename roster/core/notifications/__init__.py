# roster/core/notifications/__init__.py
"""
Multi-channel notification delivery.

- ``payloads``: tagged SMS / email payloads, delivery config and summaries
- ``delivery``: batched fan-out with per-recipient failure isolation
- ``first_contact``: one-time contact-card attachment for first sends
- ``call_times``: call-time parsing, shifting and date formatting
- ``call_cards``: bulk, single and custom call-card sends
- ``push``: call-time push notification and status reset

Used by the crewing workflow for single-recipient outreach and
directly for mass call-card notifications.
"""
