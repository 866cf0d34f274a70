"""Application layer - orchestrates domain objects and modules."""
