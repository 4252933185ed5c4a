"""Utility helpers for agentpipe."""
