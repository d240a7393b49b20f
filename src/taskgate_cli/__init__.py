"""Command-line interface for taskgate."""
