"""Parameterized test execution engine.

Runs one reusable test once per parameter set, with bounded concurrency,
per-iteration timeouts, retries and stop-on-failure, and rolls the outcomes
into a single aggregate run record.
"""

__version__ = "0.1.0"
