"""
Tests for the Storage Package.

This package contains tests for:
- Entity validation
- Repositories over users, bindings, tradings and the journal
- Balance Mutator and the trading log processor
- Engine setup and account lifecycle
"""
