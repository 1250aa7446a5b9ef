"""
Session state for stepkeeper.

- models: steps, step results, the persisted snapshot
- lifecycle: OS lifecycle observation and fan-out
- recovery: pure wall-clock reconciliation
- snapshot_store: durable single-snapshot storage
"""
