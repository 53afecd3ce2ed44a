"""Security primitives for Conductor."""

from conductor.security.policy import ActionTracker, SecurityPolicy

__all__ = ["ActionTracker", "SecurityPolicy"]
