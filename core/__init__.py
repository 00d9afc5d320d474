"""
Core Module Package.

Infrastructure shared by every layer of the account store.

Components:
- config: Startup settings from the environment
- clock: UTC time source
- context: Deadline and cancellation token
- exceptions: Error taxonomy
- logging_setup: Root logger setup
"""
