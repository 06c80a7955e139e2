"""Command-line interface for the BitBonsai license server."""
