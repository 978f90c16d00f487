"""Terminal rendering and logging setup."""
