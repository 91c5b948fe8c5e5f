from services.store.conversations import ConversationNotFound, ConversationStore

__all__ = ["ConversationNotFound", "ConversationStore"]
