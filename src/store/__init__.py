"""Content-addressed dataset storage.

This module manages normalized datasets, their identity and metadata,
the digest-addressed store and the repair of stored datasets.
"""
