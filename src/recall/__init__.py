"""recall — retrieval and identity memory layer for personal communications."""

__version__ = "0.1.0"
