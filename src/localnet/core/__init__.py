"""Core orchestration.

The network orchestrator that launches and destroys local networks, and
the status reporter that keeps the registry in line with the processes
that are actually alive.
"""
