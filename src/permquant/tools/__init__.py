"""Command-line entry points for permquant."""
