"""Alquimia dashboard API: business analytics chat with a WhatsApp channel."""

__version__ = "1.0.0"
