"""Command-line tools for TigerDorm."""
