"""recall command-line interface."""
