"""Domain models and the error taxonomy."""
