"""Record models."""
