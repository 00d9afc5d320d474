"""
Tests for the Secret Engine.
"""
