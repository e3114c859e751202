"""HTTP routers for the operator API."""
