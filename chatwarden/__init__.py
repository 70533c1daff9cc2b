"""
chatwarden - real-time abuse detection and escalation for multi-tenant chat.

Content risk scoring for messages plus abuse-rate ("anti-nuke") detection for
destructive administrative actions, sharing one escalation state per actor.
"""

__version__ = "0.1.0"

__all__ = [
    "__version__",
]
