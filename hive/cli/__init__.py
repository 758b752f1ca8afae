"""Command-line interface for Hive."""
