"""Core modules for FixelStats."""
