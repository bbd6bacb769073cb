"""stackctl: a small dependency-aware orchestrator for a container stack.

Single-node orchestrator that demonstrates:
 - dependency-ordered startup (topological order, declaration-order ties)
 - health polling with a per-service state machine
 - restart policies with bounded retries and exponential backoff
 - reverse-order shutdown

State lives in one SQLite file, so separate CLI invocations see the same stack.
"""
