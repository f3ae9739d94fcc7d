"""Command-line entry points for proviso."""
