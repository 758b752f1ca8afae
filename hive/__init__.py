"""
Hive — Sub-agent Orchestration Engine

Accepts batches of task descriptors, dispatches each task to an isolated
worker, bounds concurrency, collects results, and enforces per-worker
capability restrictions.

Architecture layers (bottom to top):
    1. Task descriptor validation and capability policy
    2. Dependency graph resolution
    3. Scheduler / admission control (bounded slot pool)
    4. Worker execution (isolated contexts, pluggable payload runners)
    5. Result aggregation
    6. Orchestrator (submit / collect / cancel)
"""

__version__ = "0.1.0"
