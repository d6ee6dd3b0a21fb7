"""Process supervision and task scheduling engine.

The engine turns two opaque command-line programs into a resumable batch
job. A long-lived service process is shared across tasks; a worker process is
started per task. Neither program speaks a structured protocol, so task
outcome is decided from free-form output lines (sentinels) and exit codes.

Layers, leaf first:

- ``sentinels``: ordered substring rules mapping a line to a control signal.
- ``backlog``: completed-task bookkeeping in SQLite, candidates minus done.
- ``process``: one external process with streamed lines and tree kill.
- ``supervisor``: service/worker lifecycle resolving one ``RunOutcome``.
- ``session``: retry, backoff, budget and restart state machine.
"""
