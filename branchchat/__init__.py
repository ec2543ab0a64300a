"""branchchat — local-first LLM chat client with branching conversations."""

__version__ = "0.1.0"
