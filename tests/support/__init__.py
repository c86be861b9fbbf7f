"""Shared helpers for harness tests."""
