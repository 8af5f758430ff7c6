"""Self-hosted cloud file storage server."""
