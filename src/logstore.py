"""Public API surface for logstore.

This module provides a stable import path for library users.
It re-exports the store, dataset and import entry points.
"""

from __future__ import annotations

from core.config import StoreConfig
from core.reporting import Reporter
from core.types import IdentityEntry, ImportOptions, LazyDataStream, NormalizeOptions
from ingest.importer import Importer, find_import_info, import_dataset
from ingest.normalize import Normalizer, normalize
from store.compression import compress_dataset, decompress_dataset
from store.datastore import Datastore
from store.dataset import Dataset
from store.index_build import index_build
from store.repair import repair_dataset

__all__ = [
    "Dataset",
    "Datastore",
    "IdentityEntry",
    "ImportOptions",
    "Importer",
    "LazyDataStream",
    "NormalizeOptions",
    "Normalizer",
    "Reporter",
    "StoreConfig",
    "compress_dataset",
    "decompress_dataset",
    "find_import_info",
    "import_dataset",
    "index_build",
    "normalize",
    "repair_dataset",
]
