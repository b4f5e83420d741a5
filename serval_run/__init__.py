"""Serval Run: asynchronous HTTP API test execution."""

__version__ = "1.0.0"
