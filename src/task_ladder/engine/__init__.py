"""Task lifecycle engine: ordered task list, escalation ladder and metrics.

The engine never talks to disk or a database directly. Each operation opens
one ``backend.transaction()`` and works through three collaborators:

- the task store, source of truth for current status;
- the ordered task list, source of truth for sequence and tier metadata;
- the history log, source of truth for timing and the audit trail.

Two backends implement the same contract (``task_ladder.storage.files`` and
``task_ladder.storage.sql``) and are exercised by one shared test suite.
"""
