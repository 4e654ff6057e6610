"""ccstatus command-line interface."""
