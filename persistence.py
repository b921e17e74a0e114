from __future__ import annotations

import json
import logging
import zipfile
from pathlib import Path
from typing import Any

import numpy as np

from exceptions import ModelFormatError

logger = logging.getLogger(__name__)

FORMAT_NAME = "decision-forest"
FORMAT_VERSION = 1
HEADER_KEY = "__header__"


def write_archive(
    path: str | Path,
    kind: str,
    header: dict[str, Any],
    arrays: dict[str, np.ndarray],
) -> None:
    """Write a model as one uncompressed .npz archive with a JSON header entry."""
    if HEADER_KEY in arrays:
        raise ValueError(f"{HEADER_KEY} is reserved")
    record = {"format": FORMAT_NAME, "version": FORMAT_VERSION, "kind": kind, **header}
    payload = {HEADER_KEY: np.array(json.dumps(record, sort_keys=True))}
    payload.update(arrays)

    path = Path(path)
    # A file object keeps numpy from appending ".npz" to the caller's name.
    with open(path, "wb") as out:
        np.savez(out, **payload)


def read_archive(path: str | Path, kind: str) -> tuple[dict[str, Any], dict[str, np.ndarray]]:
    path = Path(path)
    try:
        with np.load(path, allow_pickle=False) as archive:
            if HEADER_KEY not in archive.files:
                raise ModelFormatError(f"{path} has no model header")
            header = json.loads(str(archive[HEADER_KEY]))
            arrays = {name: archive[name] for name in archive.files if name != HEADER_KEY}
    except ModelFormatError:
        raise
    except (OSError, EOFError, ValueError, KeyError, zipfile.BadZipFile) as e:
        raise ModelFormatError(f"cannot read model file {path}: {e}") from e

    if not isinstance(header, dict) or header.get("format") != FORMAT_NAME:
        raise ModelFormatError(f"{path} is not a {FORMAT_NAME} model")
    if header.get("version") != FORMAT_VERSION:
        raise ModelFormatError(
            f"{path} has model version {header.get('version')}, expected {FORMAT_VERSION}"
        )
    if header.get("kind") != kind:
        raise ModelFormatError(f"{path} holds a {header.get('kind')}, not a {kind}")

    logger.debug("Read %s with %d arrays from %s.", kind, len(arrays), path)
    return header, arrays
