"""
WP-Agent Foundation - framework-free request orchestration.

1. TYPES      - Result (Ok/Err) values for collaborator calls
2. ERRORS     - Error taxonomy and the single error classifier
3. RESILIENCE - Bounded retries with exponential backoff
4. MEMORY     - Bounded per-session chat and action history
5. ADVISORY   - Policy and workflow suggestion merging
6. FALLBACK   - Deterministic keyword rule table
7. HEALING    - Recovery prompt after failed remote actions
8. LLM        - Gemini and OpenAI-compatible clients
9. DISPATCH   - Stateless/contextual dispatch and confirmation
"""

from wpagent.foundation.types import Ok, Err, Result, Error, ErrorCode
from wpagent.foundation.errors import (
    ErrorKind,
    AgentError,
    ValidationError,
    RateLimitExceededError,
    GenerativeError,
    classify_error,
)
from wpagent.foundation.resilience import ResilientCaller, RetryConfig
from wpagent.foundation.memory import SessionMemory, SessionRegistry
from wpagent.foundation.advisory import Suggestion, merge_advisories
from wpagent.foundation.fallback import FallbackResponder, ErrorContext
from wpagent.foundation.healing import AutoHealer, RecoveryMessage, detect_failure
from wpagent.foundation.llm import GenerativeConfig, GeminiClient, OpenAICompatibleClient
from wpagent.foundation.dispatch import (
    DispatchEngine,
    DispatchRequest,
    DispatchResult,
    Conversational,
    StructuredCommand,
    PendingConfirmation,
    ErrorReply,
    to_reply,
)

__all__ = [
    "Ok", "Err", "Result", "Error", "ErrorCode",
    "ErrorKind", "AgentError", "ValidationError",
    "RateLimitExceededError", "GenerativeError", "classify_error",
    "ResilientCaller", "RetryConfig",
    "SessionMemory", "SessionRegistry",
    "Suggestion", "merge_advisories",
    "FallbackResponder", "ErrorContext",
    "AutoHealer", "RecoveryMessage", "detect_failure",
    "GenerativeConfig", "GeminiClient", "OpenAICompatibleClient",
    "DispatchEngine", "DispatchRequest", "DispatchResult",
    "Conversational", "StructuredCommand", "PendingConfirmation", "ErrorReply",
    "to_reply",
]
