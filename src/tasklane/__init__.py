"""tasklane: dependency-aware parallel execution of AI worker tasks."""

__version__ = "0.3.0"
