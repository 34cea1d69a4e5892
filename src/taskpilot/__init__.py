"""Drive an external AI coding agent through scoped, validated work cycles."""

__version__ = "0.1.0"
