"""hubstore: confidential storage hub and cross-service comparator."""

__version__ = "0.1.0"
