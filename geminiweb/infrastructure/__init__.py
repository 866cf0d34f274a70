"""Infrastructure layer - terminal shell and other adapters."""
