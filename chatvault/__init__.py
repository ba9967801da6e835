"""chatvault: local-first conversation tree with encrypted cross-device sync."""

__version__ = "0.1.0"
