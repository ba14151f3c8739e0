"""Rides app: data model, pricing and the HTTP API client."""
