"""Per-device storage: entity models and the SQLite document store."""
