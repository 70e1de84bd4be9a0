"""jmapc command-line interface."""
