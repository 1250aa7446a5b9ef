"""
stepkeeper: keeps timed, step-based training sessions correct across
process suspension.

- session: data model, lifecycle observation, reconciliation, snapshot storage
- core: reminder scheduling, effect execution, the session controller
- cli: command-line tools for simulation and snapshot inspection
"""

__version__ = "0.1.0"
