"""treehash - resumable, race-aware content hashing for file trees."""

__version__ = "0.1.0"
