"""Session state engine."""
