"""HTTP routers for the circles node."""
