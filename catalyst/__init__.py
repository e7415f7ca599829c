"""catalyst: orchestration engine for multi-agent software generation."""

__version__ = "0.1.0"
