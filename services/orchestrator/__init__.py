from services.orchestrator.stream import ChatTurn, StreamOrchestrator, StreamPhase, TurnSession

__all__ = ["ChatTurn", "StreamOrchestrator", "StreamPhase", "TurnSession"]
