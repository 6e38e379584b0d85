from .agent import AgentLoop, ToolPolicy
from .gateway import ModelGateway, TextAnswer, ToolRequest
from .intent import Action, Intent, KeywordIntentRouter
from .models import OperationMode, ToolCall, ToolContext, ToolErr, ToolOk, Turn
from .retry import RetryExecutor
from .store import ConversationStore
from .tools import ToolDeclaration, ToolRegistry

__all__ = [
    "Action",
    "AgentLoop",
    "ConversationStore",
    "Intent",
    "KeywordIntentRouter",
    "ModelGateway",
    "OperationMode",
    "RetryExecutor",
    "TextAnswer",
    "ToolCall",
    "ToolContext",
    "ToolDeclaration",
    "ToolErr",
    "ToolOk",
    "ToolPolicy",
    "ToolRegistry",
    "ToolRequest",
    "Turn",
]
