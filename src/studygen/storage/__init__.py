"""SQLite storage: ORM tables, engine policy, and migrations."""
