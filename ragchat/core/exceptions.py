"""
Unified exception module

Project-level exception hierarchy used to:
1. Classify chat pipeline failures
2. Carry structured error details
3. Map each failure class to an HTTP status before any byte is streamed
"""
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCategory(str, Enum):
    """Error category"""
    VALIDATION = "validation"
    PROVIDER = "provider"
    ENHANCEMENT = "enhancement"
    RETRIEVAL = "retrieval"
    EMBEDDING = "embedding"
    LLM = "llm"
    CONFIGURATION = "configuration"
    SYSTEM = "system"


class BaseError(Exception):
    """
    Base exception

    Every project exception derives from this class and exposes the same
    structured payload.
    """

    http_status: int = 500

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        self.message = message
        self.category = category
        self.details = details or {}
        self.cause = cause
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "error": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "details": self.details,
        }
        if self.cause:
            result["cause"] = str(self.cause)
        return result

    def __str__(self) -> str:
        return f"[{self.category.value}] {self.message}"


class ValidationError(BaseError):
    """Malformed request: empty question, bad role sequence, unsupported provider/model pair"""

    http_status = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        details = details or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]
        super().__init__(
            message=message,
            category=ErrorCategory.VALIDATION,
            details=details,
            cause=cause,
        )


class ProviderUnavailableError(BaseError):
    """The requested provider is administratively disabled in this deployment"""

    http_status = 409

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if provider:
            details["provider"] = provider
        if model:
            details["model"] = model
        super().__init__(
            message=message,
            category=ErrorCategory.PROVIDER,
            details=details,
        )


class EnhancementError(BaseError):
    """Query rewrite or HyDE call failed; always recovered locally"""

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.ENHANCEMENT,
            details={"stage": stage} if stage else {},
            cause=cause,
        )


class RetrievalError(BaseError):
    """Vector search failure; terminal for the request"""

    def __init__(
        self,
        message: str,
        function: Optional[str] = None,
        query: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        details = details or {}
        if function:
            details["function"] = function
        if query:
            details["query"] = query[:100]
        super().__init__(
            message=message,
            category=ErrorCategory.RETRIEVAL,
            details=details,
            cause=cause,
        )


class EmbeddingError(BaseError):
    """Embedding provider failure"""

    def __init__(
        self,
        message: str,
        model_name: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        details = details or {}
        if model_name:
            details["model_name"] = model_name
        super().__init__(
            message=message,
            category=ErrorCategory.EMBEDDING,
            details=details,
            cause=cause,
        )


class GenerationError(BaseError):
    """
    Chat completion failure

    ``committed`` is True when output had already reached the caller, in which
    case the error can only be logged.
    """

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        attempted: Optional[List[str]] = None,
        committed: bool = False,
        cause: Optional[Exception] = None,
    ):
        self.attempted = list(attempted or [])
        self.committed = committed
        details: Dict[str, Any] = {"attempted": self.attempted, "committed": committed}
        if provider:
            details["provider"] = provider
        super().__init__(
            message=message,
            category=ErrorCategory.LLM,
            details=details,
            cause=cause,
        )


class ConfigurationError(BaseError):
    """Configuration error"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        details = details or {}
        if config_key:
            details["config_key"] = config_key
        super().__init__(
            message=message,
            category=ErrorCategory.CONFIGURATION,
            details=details,
            cause=cause,
        )

