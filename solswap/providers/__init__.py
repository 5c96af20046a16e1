"""Adapters for the services the swap pipeline talks to."""
