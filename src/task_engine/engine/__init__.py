"""Agent task queue: store, claimer, retry policy, event log and worker loop.

Workers share one SQLite database and coordinate only through conditional
``UPDATE ... WHERE status = ...`` statements, so several processes (or a
thread pool inside one process) can drain the same queue without a broker.
"""
