"""Orchestration services: log, router, executor, cache, gate, task board and orchestrator."""
