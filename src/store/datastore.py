"""Content-addressable dataset store.

This module owns the store root layout: immutable datasets under
``core/<digest>``, rebuildable artifacts under ``cache/<digest>`` and
transient staging directories under ``incoming/<n>``.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
import shutil
from typing import Callable, Iterable, Iterator, Mapping

import yaml

from core.config import StoreConfig
from core.constants import STORE_CACHE_DIR_NAME, STORE_CORE_DIR_NAME, STORE_INCOMING_DIR_NAME
from core.dataset_identity import (
    is_valid_encoded_digest,
    validate_encoded_digest,
    validate_encoded_short_digest,
)
from core.errors import (
    AmbiguousShortDigestError,
    DatasetAlreadyExistsError,
    DatasetNotFoundError,
    LogStoreStoreError,
)
from core.logging_config import get_logger
from store.dataset import Dataset

_LOGGER = get_logger(__name__)

ValidateMode = bool | str | None


class Datastore:
    """Store of normalized datasets keyed by digest."""

    def __init__(self, config: StoreConfig) -> None:
        """Initialize the store from config.

        Args:
            config: Runtime configuration; ``store_root`` must exist.
        """
        self._config = config
        self.datastore_path = config.store_root.resolve()

    @classmethod
    def create(cls, config: StoreConfig) -> "Datastore":
        """Create the store directory layout and return the store."""
        for name in (STORE_CORE_DIR_NAME, STORE_CACHE_DIR_NAME, STORE_INCOMING_DIR_NAME):
            (config.store_root / name).mkdir(parents=True, exist_ok=True)
        _LOGGER.info("datastore_created", store_root=str(config.store_root))
        return cls(config)

    @property
    def config(self) -> StoreConfig:
        return self._config

    def core_path_of(self, digest: str) -> Path:
        return self.datastore_path / STORE_CORE_DIR_NAME / digest

    def cache_path_of(self, digest: str) -> Path:
        return self.datastore_path / STORE_CACHE_DIR_NAME / digest

    def has(self, digest: str) -> bool:
        """Return whether ``core/<digest>`` exists, without following redirects."""
        return self.core_path_of(digest).exists()

    @staticmethod
    def is_redirect(path: Path) -> bool:
        """Return whether ``path`` is a redirect marker."""
        if not path.is_file():
            return False
        try:
            document = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError:
            return False
        return isinstance(document, dict) and "to" in document

    def each_dataset_digest(self, redirects: bool = False) -> Iterator[str]:
        """Yield the digests of stored datasets, and of redirects if requested."""
        core_dir = self.datastore_path / STORE_CORE_DIR_NAME
        if not core_dir.is_dir():
            return
        for path in sorted(core_dir.iterdir()):
            if Dataset.dataset_exists(path) or (redirects and self.is_redirect(path)):
                yield path.name

    def each_dataset(self, validate: ValidateMode = False) -> Iterator[Dataset]:
        for digest in self.each_dataset_digest(redirects=False):
            yield self.get(digest, validate=validate)

    def get(self, digest: str, validate: ValidateMode = True) -> Dataset:
        """Return a stored dataset, following redirects.

        Args:
            digest: Full digest or unique digest prefix.
            validate: ``True`` or ``"full"`` re-hashes every file, ``"weak"``
                checks identity shape and file presence, ``False`` skips checks.

        Returns:
            The dataset bound to its store paths.

        Raises:
            InvalidDigestError: If ``digest`` is not hexadecimal.
            DatasetNotFoundError: If no dataset matches.
            AmbiguousShortDigestError: If a prefix matches several datasets.
        """
        validate_encoded_short_digest(digest)
        if not (is_valid_encoded_digest(digest) and self.has(digest)):
            return self._get_from_short_digest(digest, validate)
        resolved = self.resolve_redirect(digest)
        dataset = Dataset(
            self.core_path_of(resolved), digest=resolved, cache_path=self.cache_path_of(resolved)
        )
        _validate_dataset(dataset, validate)
        return dataset

    def find_dataset_from_short_digest(
        self, short_digest: str, validate: ValidateMode = False
    ) -> Dataset | None:
        """Return the dataset whose digest starts with ``short_digest``, if any.

        Raises:
            AmbiguousShortDigestError: If more than one stored digest matches.
        """
        matches = [
            digest
            for digest in self.each_dataset_digest(redirects=True)
            if digest.startswith(short_digest)
        ]
        if len(matches) > 1:
            raise AmbiguousShortDigestError(
                f"{short_digest} is ambiguous, it matches {', '.join(matches)}. "
                "Use a longer digest prefix."
            )
        if not matches:
            return None
        return self.get(matches[0], validate=validate)

    def short_digest(self, dataset: Dataset, size: int = 10) -> str:
        """Return a unique prefix of the dataset digest, or the full digest."""
        digest = _require_digest(dataset)
        short = digest[:size]
        try:
            self.find_dataset_from_short_digest(short)
        except AmbiguousShortDigestError:
            return digest
        return short

    def resolve_redirect(self, digest: str) -> str:
        """Follow redirect markers from ``digest`` to a stored dataset digest.

        Raises:
            DatasetNotFoundError: If the chain ends at a missing entry.
            LogStoreStoreError: If the chain loops or holds an invalid marker.
        """
        seen: list[str] = []
        while True:
            core_path = self.core_path_of(digest)
            if not core_path.exists():
                raise DatasetNotFoundError(
                    f"no dataset with digest {digest} exists"
                    + (f" (redirected from {seen[0]})" if seen else "")
                )
            if not core_path.is_file():
                return digest
            if digest in seen:
                raise LogStoreStoreError(
                    f"redirect loop detected: {' -> '.join([*seen, digest])}. "
                    "Remove one of the redirect files."
                )
            seen.append(digest)
            digest = _read_redirect_target(core_path)

    def write_redirect(self, redirected_digest: str, to: str, **doc: object) -> None:
        """Replace ``core/<redirected_digest>`` with a redirect marker to ``to``."""
        validate_encoded_digest(redirected_digest)
        validate_encoded_digest(to)
        document = {str(key): value for key, value in doc.items()}
        document["to"] = to
        core_path = self.core_path_of(redirected_digest)
        core_path.parent.mkdir(parents=True, exist_ok=True)
        core_path.write_text(yaml.safe_dump(document), encoding="utf-8")
        _LOGGER.info("datastore_redirect_written", source=redirected_digest, target=to)

    def delete(self, digest: str) -> None:
        """Remove a dataset or redirect and its cache."""
        cache_path = self.cache_path_of(digest)
        if cache_path.exists():
            shutil.rmtree(cache_path)
        core_path = self.core_path_of(digest)
        if core_path.is_dir():
            shutil.rmtree(core_path)
        else:
            core_path.unlink()
        _LOGGER.info("dataset_deleted", digest=digest)

    def find(self, metadata: Mapping[str, object], validate: ValidateMode = False) -> Dataset | None:
        """Return the only dataset matching ``metadata``, ``None`` if none match.

        Raises:
            LogStoreStoreError: If more than one dataset matches.
        """
        matches = self.find_all(metadata, validate=validate)
        if len(matches) > 1:
            raise LogStoreStoreError(
                f"{len(matches)} datasets match {dict(metadata)}, use find_all instead"
            )
        return matches[0] if matches else None

    def find_all(self, metadata: Mapping[str, object], validate: ValidateMode = False) -> list[Dataset]:
        """Return datasets whose metadata holds every queried value."""
        query = {str(key): _as_value_set(values) for key, values in metadata.items()}
        return [
            dataset
            for dataset in self.each_dataset(validate=validate)
            if all(values <= dataset.metadata.get(key, set()) for key, values in query.items())
        ]

    @contextmanager
    def in_incoming(self, keep: bool = False) -> Iterator[tuple[Path, Path]]:
        """Allocate a staging directory and yield its ``(core, cache)`` paths.

        The staging slot is the smallest free ``incoming/<n>``, claimed by
        directory creation. Whatever is still staged when the block exits
        is deleted unless ``keep`` is set.
        """
        incoming_dir = self.datastore_path / STORE_INCOMING_DIR_NAME
        incoming_dir.mkdir(parents=True, exist_ok=True)
        import_dir = _claim_incoming_slot(incoming_dir)
        try:
            core_path = import_dir / STORE_CORE_DIR_NAME
            cache_path = import_dir / STORE_CACHE_DIR_NAME
            core_path.mkdir()
            cache_path.mkdir()
            yield core_path, cache_path
        finally:
            if not keep and import_dir.exists():
                shutil.rmtree(import_dir)

    def move_dataset_to_store(self, dataset: Dataset) -> Dataset:
        """Move a staged dataset to its digest location.

        Raises:
            LogStoreStoreError: If the dataset core and cache paths are the same
                or the dataset has no digest.
            DatasetAlreadyExistsError: If the digest is already stored.
        """
        if dataset.dataset_path == dataset.cache_path:
            raise LogStoreStoreError(
                "cannot move a dataset that has identical cache and data paths"
            )
        digest = _require_digest(dataset)
        final_core_dir = self.core_path_of(digest)
        final_cache_dir = self.cache_path_of(digest)
        if final_core_dir.exists():
            raise DatasetAlreadyExistsError(
                f"a dataset with digest {digest} already exists in the store"
            )
        final_core_dir.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(dataset.dataset_path), str(final_core_dir))
        if dataset.cache_path.exists():
            if final_cache_dir.exists():
                shutil.rmtree(final_cache_dir)
            final_cache_dir.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(dataset.cache_path), str(final_cache_dir))
        _LOGGER.info("dataset_moved_to_store", digest=digest, core_path=str(final_core_dir))
        return Dataset(final_core_dir, digest=digest, cache_path=final_cache_dir)

    def updating_digest(
        self, dataset: Dataset, update: Callable[[Dataset], object]
    ) -> Dataset:
        """Run an identity-changing operation and move the dataset accordingly.

        ``update`` receives its own ``Dataset`` bound to the current store
        paths, so ``dataset`` keeps its digest and paths.

        Args:
            dataset: Stored dataset.
            update: Operation that rewrites the identity file of the dataset
                it is given.

        Returns:
            The dataset at its (possibly new) digest location.
        """
        old_digest = _require_digest(dataset)
        working = Dataset(
            self.core_path_of(old_digest),
            digest=old_digest,
            cache_path=self.cache_path_of(old_digest),
        )
        update(working)
        new_digest = working.compute_dataset_digest()
        if new_digest == old_digest:
            return dataset
        if self.has(new_digest):
            raise DatasetAlreadyExistsError(
                f"{old_digest}: updated dataset has digest {new_digest}, which is already "
                "in the store. Delete one of them."
            )
        shutil.move(str(self.core_path_of(old_digest)), str(self.core_path_of(new_digest)))
        if self.cache_path_of(old_digest).exists():
            shutil.move(str(self.cache_path_of(old_digest)), str(self.cache_path_of(new_digest)))
        _LOGGER.info("dataset_digest_changed", old_digest=old_digest, new_digest=new_digest)
        return self.get(new_digest, validate=False)

    def _get_from_short_digest(self, digest: str, validate: ValidateMode) -> Dataset:
        dataset = self.find_dataset_from_short_digest(digest, validate=validate)
        if dataset is None:
            raise DatasetNotFoundError(f"no dataset with digest {digest} exists")
        return dataset


def _claim_incoming_slot(incoming_dir: Path) -> Path:
    index = 0
    while True:
        candidate = incoming_dir / str(index)
        if candidate.exists():
            index += 1
            continue
        try:
            candidate.mkdir()
        except FileExistsError:
            index += 1
            continue
        _LOGGER.debug("incoming_slot_claimed", path=str(candidate))
        return candidate


def _validate_dataset(dataset: Dataset, validate: ValidateMode) -> None:
    if validate is True or validate == "full":
        dataset.validate_identity_metadata()
    elif validate == "weak":
        dataset.weak_validate_identity_metadata()
    elif validate not in (False, None):
        raise ValueError(f"expected validate to be True, False, 'full' or 'weak', got {validate!r}")


def _read_redirect_target(path: Path) -> str:
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as error:
        raise LogStoreStoreError(f"cannot parse redirect file {path}: {error}") from error
    target = document.get("to") if isinstance(document, dict) else None
    if not isinstance(target, str) or not is_valid_encoded_digest(target):
        raise LogStoreStoreError(
            f"{path} is neither a dataset nor a valid redirect. Delete it or restore it."
        )
    return target


def _require_digest(dataset: Dataset) -> str:
    if dataset.digest is None:
        raise LogStoreStoreError(
            f"{dataset.dataset_path} has no digest. Write its identity file first."
        )
    return dataset.digest


def _as_value_set(values: object) -> set[str]:
    if isinstance(values, str):
        return {values}
    if isinstance(values, Iterable):
        return {str(value) for value in values}
    return {str(values)}
