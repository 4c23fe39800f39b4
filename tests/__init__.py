"""
StreamDB Test Suite.

This package contains:
- unit/: Unit tests (one tenant database per test, no collaborators)
- integration/: Deletion engine scenarios and the admin CLI
"""
