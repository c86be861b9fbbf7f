"""Shutdown harness test package."""
