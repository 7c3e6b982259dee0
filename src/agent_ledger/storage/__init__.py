"""SQLite storage primitives shared by the ledger."""
