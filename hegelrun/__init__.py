"""Property-based test runner, stateful testing and packet protocol for a Hegel server."""

__version__ = "0.2.6"