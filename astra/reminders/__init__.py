"""Reminder package.

Architectural role:
    Owns reminder data types, the pure recurrence engine, the polling scheduler,
    and the reminder actions (create, list, cancel) invoked by the task dispatcher.

Module split:
    - `reminder_types`: `Reminder`, `Recurrence`, status values.
    - `recurrence`: pure next-occurrence arithmetic.
    - `scheduler`: poll loop, state machine, catch-up rule.
    - `reminder_actions`: router-driven create/list/cancel handling.
"""
