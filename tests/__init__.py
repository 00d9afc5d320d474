"""
Tests for the Trading Account Store.

Subpackages mirror the source packages.
"""
