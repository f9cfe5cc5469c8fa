"""Command-line interface for sqlkv."""
