"""Clients for the storage backend the console talks to."""
