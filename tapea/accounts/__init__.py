"""Accounts app: credential persistence and client authentication."""
