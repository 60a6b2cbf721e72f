"""idemco API routers."""
