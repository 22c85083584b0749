"""hrsync: data synchronization and conflict resolution for HR records."""

__version__ = "0.1.0"
