"""Cloud storage server."""
