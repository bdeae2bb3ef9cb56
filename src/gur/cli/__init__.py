"""Command-line interface for gur."""
