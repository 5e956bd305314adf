"""Task scheduler for headless ``droid`` agent runs.

Why threads and not asyncio?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Each agent run is one OS process whose stdout/stderr must be drained while
it runs. A reader thread per pipe plus one waiter thread per process keeps
the supervisor simple and lets the scheduler stay a plain synchronous object
guarded by a single re-entrant lock. Concurrency is bounded by
``max_parallel_tasks``, so the thread count stays small.

State lives in one SQLite file (SQLModel + alembic). Collections are written
as whole snapshots so a reader never observes a half-applied admission cycle.
"""
