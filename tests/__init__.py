"""Test suite for the schema sync engine.

This package contains:
- Unit tests for individual modules
- Integration tests for export, import and migrate workflows
"""
