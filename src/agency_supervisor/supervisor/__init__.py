"""Supervisor core: scheduling, worker processes, pipelines and recovery.

Cards are units of agent work. The coordinator turns backlog events into
pipeline steps ("flows"), the scheduler bounds how many run at once and keeps
one run per card, and the worker supervisor runs each flow in an isolated
child process that reports back through an NDJSON log. State that must
survive a crash lives in ``supervisor-state.json``.
"""
