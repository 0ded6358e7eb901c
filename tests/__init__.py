"""
Tests Package - Unit Tests

Test structure:
- tests/unit/ - Fast, isolated unit tests
- tests/fakes.py - Fake upstream/downstream HTTP APIs and record builders
- tests/conftest.py - Shared pytest fixtures (temporary store, state, identities)
"""
