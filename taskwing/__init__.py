"""TaskWing: evidence-backed knowledge graph of a repository for grounded planning."""

__version__ = "0.9.0"
