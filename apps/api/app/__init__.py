"""Public compilation API."""
