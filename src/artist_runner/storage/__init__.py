"""SQLite storage helpers and table models."""
