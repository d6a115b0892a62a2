"""feature-orchestrator: staged, assistant-driven feature development sessions."""

__version__ = "0.1.0"
