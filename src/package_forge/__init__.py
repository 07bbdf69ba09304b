"""Package Forge: LLM-driven project generation with patch reconciliation."""

__version__ = "0.1.0"
