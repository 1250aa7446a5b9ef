"""
Core services.

- reminders: deferred step reminders
- effects: queued fire-and-forget store/scheduler calls
- controller: the session state machine
"""
