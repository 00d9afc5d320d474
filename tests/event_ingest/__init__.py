"""
Tests for event ingest: ledger, dispatcher and retry worker.
"""
