"""Command-line entry point for batch-prep."""
