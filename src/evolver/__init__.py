"""Evolver - evolutionary improvement of agent tool documentation.

Runs generations of agent trials against a shared creative-application
session, detects recurring behavioral patterns, and applies one
documentation improvement per generation with automatic rollback.
"""

__version__ = "0.4.0"
