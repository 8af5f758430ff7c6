"""Command line interface for cloudvault."""
