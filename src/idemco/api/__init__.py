"""idemco HTTP API package."""
