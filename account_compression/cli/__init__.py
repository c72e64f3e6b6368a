"""Command line interface for account compression trees."""
