"""
mailgloss

A terminal email client that composes and sends mail through pluggable
providers, keeps a bounded history of sent messages, and manages
reusable contacts and templates.
"""

__version__ = "0.3.0"
__app_name__ = "mailgloss"
