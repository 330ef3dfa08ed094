"""chunkvault: storage and incremental sync for client-encrypted chunks."""

__version__ = "0.1.0"
