"""
Protocol review lifecycle engine.

Tracks research-ethics protocols from submission through reviewer
assessment to a chairperson's final decision, with validated storage,
role-scoped decision views and real-time change notifications.
"""

__version__ = "0.1.0"
