"""opsagent - AI agent orchestration runtime."""

__version__ = "0.4.0"
