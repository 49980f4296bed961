"""Command line entrypoints for metarelay."""
