"""Compare, hash and synchronise files from external repositories into Dataverse datasets."""

__version__ = "0.1.0"

__all__ = [
    "cache",
    "compare",
    "dataverse",
    "frontend_config",
    "handlers",
    "hashing",
    "jobs",
    "model",
    "persisting",
    "rehashing",
    "settings",
    "storage",
    "version",
]