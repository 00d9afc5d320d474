"""
Security Package.

Credential handling for exchange bindings: encryption at rest,
keyed hashing for lookup, masking for display, key generation.
"""

from security.secret_engine import KeyClass, SealedCredentials, SecretEngine

__all__ = ["KeyClass", "SealedCredentials", "SecretEngine"]
