"""leadpilot - orchestration core for a stateful outreach automation agent.

Durable job queue, runtime lock, lead lifecycle, risk gating,
dead-letter triage and outbox relay.
"""

__version__ = "0.1.0"
