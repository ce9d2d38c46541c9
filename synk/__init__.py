"""Synk infrastructure: configuration, API clients, token handling and stores."""
