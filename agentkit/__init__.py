from .base import AgentApp

__all__ = ["AgentApp"]
