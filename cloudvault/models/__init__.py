"""Data objects exchanged over the HTTP API."""
