"""Validation of reasoner-generated SQL."""
