"""Engagement journey engine - core functionality package."""

# No imports at package level; import modules directly where needed

__version__ = "0.1.0"

__all__ = [
    "custom_steps",
    "errors",
    "extraction",
    "gemini",
    "journey_logging",
    "models",
    "ports",
    "recommendations",
    "state",
    "steps",
    "store",
    "tokenizer",
    "workflow",
]
