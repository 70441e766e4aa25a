"""Messaging channels for the analytics assistant."""
