"""infra: local service orchestration runtime."""

__version__ = "0.1.0"
