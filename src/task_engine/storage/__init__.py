"""SQLite persistence: tables, engine policy and migrations."""
