from __future__ import annotations

from typing import Optional


class BuilderError(Exception):
    """Base class for every failure raised by the site builder."""


# ------------------------------
# Configuration (fatal, never retried)
# ------------------------------


class ConfigurationError(BuilderError):
    pass


class DuplicateToolError(ConfigurationError):
    pass


class UnknownToolError(ConfigurationError):
    pass


# ------------------------------
# Model backend
# ------------------------------


class ProviderError(BuilderError):
    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientUnavailableError(ProviderError):
    """Backend reported temporary overload; safe to retry."""


class MalformedRequestError(ProviderError):
    """Backend could not form a valid tool call."""


class QuotaExceededError(ProviderError):
    pass


class InvalidRequestError(ProviderError):
    pass


class CorrectionExhaustedError(BuilderError):
    def __init__(self, corrections: int) -> None:
        super().__init__(f"model needed more than {corrections} corrections")
        self.corrections = corrections


# ------------------------------
# Tool execution (reported back to the model as observations)
# ------------------------------


class ToolExecutionError(BuilderError):
    kind = "tool_failed"

    def __init__(self, message: str, *, kind: Optional[str] = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class StorageError(ToolExecutionError):
    kind = "storage_error"


class DeploymentError(ToolExecutionError):
    kind = "deployment_failed"


class TranslationError(ToolExecutionError):
    kind = "translation_failed"


class CommandError(ToolExecutionError):
    kind = "command_failed"
