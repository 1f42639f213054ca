"""Canonical in-memory state and the engine that keeps it fresh."""
