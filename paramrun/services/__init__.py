"""Storage adapters for parameterized runs."""
