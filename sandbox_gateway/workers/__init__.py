"""Standalone background workers."""
