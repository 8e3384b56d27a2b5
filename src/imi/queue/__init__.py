"""Lease-based goal/task queue shared by independent agent processes.

Why not Celery / RQ / a broker?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Agents run on one machine and come and go as separate CLI invocations or
worker processes; there is no long-lived server to host a broker. The queue
therefore lives entirely in one SQLite file:

- A claim is a guarded ``UPDATE ... WHERE status = 'todo'`` inside a
  ``BEGIN IMMEDIATE`` transaction, re-read after commit.
- A lease is ``status = 'in_progress'`` plus ``agent_id``; it is extended by
  heartbeats and reclaimed lazily once ``last_ping_at`` is older than the TTL.
- Goal status is never stored independently: it is recomputed from the
  goal's tasks after every task mutation.

The orchestrator only spawns processes and counts outcomes; every scheduling
decision goes through ``QueueRepository``.
"""
