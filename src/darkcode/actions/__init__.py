"""Outbound actions: write endpoint, audit trail and solution submission."""
