"""Building blocks of an LSM-tree key-value store: versioned keys, an arena skiplist memtable and sorted table files."""

__version__ = "0.1.0"
__all__ = ["entry", "builder", "skiplist", "table"]