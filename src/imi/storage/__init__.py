"""SQLite store: engine policy, ORM tables and migrations."""
