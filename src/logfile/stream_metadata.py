"""Stream metadata sanitization and canonical naming.

Canonical stream files are named after the task and port that produced
the stream, as found in the stream metadata once sanitized.
"""

from __future__ import annotations

from typing import Mapping

from core.logging_config import get_logger

_LOGGER = get_logger(__name__)

TASK_NAME_KEY = "rock_task_name"
TASK_OBJECT_NAME_KEY = "rock_task_object_name"
TASK_MODEL_KEY = "rock_task_model"
TASK_NAMESPACE_KEY = "rock_task_namespace"
_GENERATOR_MODEL_PREFIX = "OroGen."


def sanitize_metadata(metadata: Mapping[str, str], stream_name: str = "") -> dict[str, str]:
    """Remove quirks that exist(ed) in logged stream metadata.

    - an empty task model entry is dropped,
    - generator-style model names (``OroGen.pkg.Task``) become ``pkg::Task``,
    - a leading ``/`` is stripped from the task name,
    - a namespaced task name (``ns/task``) is split into the task name and
      a separate namespace entry.

    Args:
        metadata: Raw stream metadata.
        stream_name: Stream name, used in log events.

    Returns:
        A sanitized copy of the metadata.
    """
    sanitized = dict(metadata)
    model = sanitized.get(TASK_MODEL_KEY)
    if model is not None and not model:
        _LOGGER.warning("stream_metadata_empty_model_removed", stream_name=stream_name)
        del sanitized[TASK_MODEL_KEY]
    elif model is not None and model.startswith(_GENERATOR_MODEL_PREFIX):
        normalized_model = model[len(_GENERATOR_MODEL_PREFIX) :].replace(".", "::")
        _LOGGER.warning(
            "stream_metadata_model_normalized",
            stream_name=stream_name,
            model=model,
            normalized_model=normalized_model,
        )
        sanitized[TASK_MODEL_KEY] = normalized_model

    task_name = sanitized.get(TASK_NAME_KEY)
    if task_name is None:
        return sanitized
    task_name = task_name.removeprefix("/")
    sanitized[TASK_NAME_KEY] = task_name
    if "/" not in task_name:
        return sanitized
    namespace, _, _ = task_name.partition("/")
    sanitized[TASK_NAMESPACE_KEY] = namespace
    sanitized[TASK_NAME_KEY] = task_name.rsplit("/", 1)[1]
    return sanitized


def normalized_stream_name(metadata: Mapping[str, str], fallback: str = "") -> str:
    """Return the canonical ``task.port`` stream name.

    Streams without task metadata keep their ``fallback`` name.
    """
    task_name = metadata.get(TASK_NAME_KEY)
    object_name = metadata.get(TASK_OBJECT_NAME_KEY)
    if task_name is None or object_name is None:
        return fallback
    return f"{task_name.removeprefix('/')}.{object_name}"


def normalized_filename(metadata: Mapping[str, str], fallback: str = "") -> str:
    """Return the canonical ``task::port`` basename of a stream file.

    Streams without task metadata are named after ``fallback``. Path
    separators are never part of the result.
    """
    task_name = metadata.get(TASK_NAME_KEY)
    object_name = metadata.get(TASK_OBJECT_NAME_KEY)
    if task_name is None or object_name is None:
        basename = fallback.removeprefix("/")
    else:
        basename = f"{task_name.removeprefix('/')}::{object_name}"
    return basename.replace("/", ":")
