"""
notesync: Ingestion and synchronization of georeferenced notes.

Loads note threads from a bulk planet snapshot or the incremental API
delta feed into one deduplicated store, unattended and crash-safe.
"""

__version__ = "0.1.0"
