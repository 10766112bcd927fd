"""AgentCluster - interactive agent sessions scheduled over a task DAG.

This package runs long-lived interactive command-line agents inside
pseudo-terminals, schedules them as nodes of a dependency graph with a
bounded concurrency budget, detects when they stall waiting for a human,
and lets operators attach to any session from a terminal, a web socket or
an HTTP long-poll client.
"""

__version__ = "0.1.0"
