"""SQLite storage primitives for scheduler state."""
