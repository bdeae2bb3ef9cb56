"""gur: a local task tracker with dependency graphs and quality gates."""

__version__ = "0.1.0"
