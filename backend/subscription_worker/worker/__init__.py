"""Subscription processing worker.

The worker processes due rows of the ``subscription_processing`` table.

Single-process (SQLite dev):
    The poll loop runs as an asyncio.Task inside the API process.
    Enabled automatically when WORKER_EMBEDDED=true (default for SQLite).

Multi-process (PostgreSQL production):
    Start any number of workers separately:
        python -m subscription_worker.worker
        WORKER_ID=w1 python -m subscription_worker.worker

Batches claim rows with SELECT … FOR UPDATE SKIP LOCKED on PostgreSQL and
serialize on ``BEGIN IMMEDIATE`` on SQLite.
"""
