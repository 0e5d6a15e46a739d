"""Domain services for loader governance."""
