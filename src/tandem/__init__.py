"""
Tandem - two-agent conversation orchestrator.

A user talks with two AI identities, a project manager and a developer,
inside one per-project session. Each turn is routed to a local or remote
model backend by capability, and any action with effects outside the
conversation waits for explicit user approval.
"""

__version__ = "0.1.0"

__all__ = [
    "models",
    "services",
    "lib",
    "cli"
]
