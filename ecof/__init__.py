"""ECOF - reliable outbound delivery for the financial-document portal."""

__version__ = "1.0.0"
