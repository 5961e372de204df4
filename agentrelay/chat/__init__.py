"""Chat-side helpers for the chat-bot binding."""

from agentrelay.chat.correlator import ChatCorrelator, PendingReply

__all__ = ["ChatCorrelator", "PendingReply"]
