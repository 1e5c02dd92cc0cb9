"""Interactive terminal browser."""
