"""Install pipeline and the system setup steps it sequences."""
