"""Supervisory controller for a CLI coding agent.

Why a single actor thread instead of asyncio or a task queue?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Exactly one agent attempt may run at a time, and the controller state (budget
buckets, approval gate, current task pointer) is mutated by ticks, approval
decisions and timeout sweeps alike. Owning that state on one thread
(`actor.ControllerActor`) makes every mutation sequential without locks in the
state machine itself; the only cross-thread signal is the cancel flag read by the
executor while a subprocess is running.

Layout, leaf-first:

- `budget`: hourly/daily token buckets, wind-down and rollover.
- `approvals`: live approval queue, auto-approval rules, timeout sweep.
- `scheduling`: readiness, task selection, retry backoff, dependency unblocking.
- `classifier`: rule-based risk classification of agent output.
- `sessions`: per-attempt execution sessions and their logs.
- `machine`: the state machine tying the above together.
- `actor` / `inbox`: the single-writer runtime and the operator command inbox.
"""
