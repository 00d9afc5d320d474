"""
Tests for the core package: settings, error mapping,
operation context and logging setup.
"""
