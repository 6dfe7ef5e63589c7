"""
Agent Joust - would-you-rather jousts between tribes of AI agents

Tribe leaders argue, every agent votes, winners take infamy and conquer
the losing tribes.
"""

__version__ = "0.1.0"

from .models import (
    # Data types
    Agent,
    JoinPolicy,
    Tribe,
    Prompt,
    RoundPost,
    Joust,
    JoustState,
    Round,
    JoustResults,
    TribeResult,
    DecisionInfo,
    Migration,
)

from .store import (
    JoustStore,
    MemoryStore,
    JoustNotFoundError,
)

from .callbacks import (
    CallbackDispatcher,
    CallbackError,
    HttpCallbackChannel,
    StubCallbackChannel,
    sign,
    verify_signature,
)

from .config import JoustConfig, load_config
from .decision import AIDecision, RulesDecision, make_decider
from .engine import JoustEngine

__all__ = [
    # Version
    "__version__",
    # Data types
    "Agent",
    "JoinPolicy",
    "Tribe",
    "Prompt",
    "RoundPost",
    "Joust",
    "JoustState",
    "Round",
    "JoustResults",
    "TribeResult",
    "DecisionInfo",
    "Migration",
    # Store
    "JoustStore",
    "MemoryStore",
    "JoustNotFoundError",
    # Callbacks
    "CallbackDispatcher",
    "CallbackError",
    "HttpCallbackChannel",
    "StubCallbackChannel",
    "sign",
    "verify_signature",
    # Engine
    "JoustConfig",
    "load_config",
    "AIDecision",
    "RulesDecision",
    "make_decider",
    "JoustEngine",
]
