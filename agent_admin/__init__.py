"""Voice agent admin service."""
