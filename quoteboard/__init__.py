"""Quoteboard: sales quote pipeline with follow-up reminders."""

__version__ = "0.1.0"
