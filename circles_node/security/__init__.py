"""Request identity for the HTTP surface."""
