"""Conversation orchestration."""

from .service import ConversationService, TurnResult, new_session_id

__all__ = ["ConversationService", "TurnResult", "new_session_id"]
