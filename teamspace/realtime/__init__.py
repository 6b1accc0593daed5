"""Live change feed and the client-side views built on it."""
