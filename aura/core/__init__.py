"""Conversation orchestration."""

from .conversation_controller import ConversationController, ConversationState, ControllerEvent

__all__ = ["ConversationController", "ConversationState", "ControllerEvent"]
