"""Door-policy simulation game: HTTP server, generator checks, greedy client and sequence analyzer."""

__version__ = "0.1.0"