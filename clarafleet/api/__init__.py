"""API layer: schemas and routes."""
