"""Typed domain entities and the pure functions that derive them."""
