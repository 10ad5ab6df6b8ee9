"""Message history storage and HTTP API."""
