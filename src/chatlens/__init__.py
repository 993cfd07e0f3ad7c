"""ChatLens: agent orchestration for chat-history analysis over LLM completion APIs."""

__version__ = "0.1.0"
