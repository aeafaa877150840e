"""HTTP surfaces: the control host, its reverse proxy, and the content server."""
