"""
stage_recall - stage-aware memory recall for guided conversations

Decides per turn how much history is safe and useful to recall, assembles it
into a bounded payload, and hands it to a single generation call.
"""

from .models import (
    ContextBundle,
    ConversationTurn,
    MemoryIntent,
    MemoryIntentResult,
    RetrievalDepth,
    RetrievalResult,
    RetrievedEvidence,
    SurfaceStyle,
    SurfacingDecision,
    TokenBudgetPlan,
)
from .config import RecallConfig, load_config
from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from .memory_intent import MemoryIntentClassifier, classify
from .retrieval import RetrievalGateway
from .context_assembler import ContextAssembler
from .surfacing import SurfacingPolicy, SurfacingTracker
from .token_budget import TokenBudgetManager, estimate_tokens
from .work_queue import BackgroundTaskQueue
from .orchestrator import TurnOrchestrator, TurnRequest, TurnResult

__all__ = [
    "ContextBundle",
    "ConversationTurn",
    "MemoryIntent",
    "MemoryIntentResult",
    "RetrievalDepth",
    "RetrievalResult",
    "RetrievedEvidence",
    "SurfaceStyle",
    "SurfacingDecision",
    "TokenBudgetPlan",
    "RecallConfig",
    "load_config",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "MemoryIntentClassifier",
    "classify",
    "RetrievalGateway",
    "ContextAssembler",
    "SurfacingPolicy",
    "SurfacingTracker",
    "TokenBudgetManager",
    "estimate_tokens",
    "BackgroundTaskQueue",
    "TurnOrchestrator",
    "TurnRequest",
    "TurnResult",
]
