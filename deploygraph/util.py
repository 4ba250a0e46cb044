from __future__ import annotations

import importlib
import logging
import os
import struct
from pathlib import Path
from typing import Any, BinaryIO, List, Tuple

import cloudpickle

from .builder import Module
from .errors import JournalError

logger = logging.getLogger(__name__)


def import_from_string(path: str) -> Any:
    """
    Import 'pkg.module:obj' or 'pkg.module.obj'.
    """
    if ":" in path:
        module_name, attr = path.split(":", 1)
    else:
        module_name, attr = path.rsplit(".", 1)
    module = importlib.import_module(module_name)
    return getattr(module, attr)


def load_module(path: str) -> Module:
    obj = import_from_string(path)
    if not isinstance(obj, Module):
        raise TypeError(f"Imported object is not a deployment module: {path}")
    return obj


# every record is an 8-byte big-endian length followed by the pickle
_HEADER = struct.Struct(">Q")


def append_record(f: BinaryIO, record: Any) -> None:
    """Append one pickled record and make it durable before returning."""
    data = cloudpickle.dumps(record)
    f.write(_HEADER.pack(len(data)) + data)
    f.flush()
    os.fsync(f.fileno())


def load_records(path: str | Path) -> Tuple[List[Any], int]:
    """
    Read every complete record from ``path``.

    Returns the records and the offset just past the last complete one. A
    record cut short by the end of the file (a crash mid-write) is ignored;
    a complete record that cannot be unpickled raises JournalError.
    """
    path = Path(path)
    records: List[Any] = []
    good_offset = 0
    if not path.exists():
        return records, good_offset

    with path.open("rb") as f:
        while True:
            header = f.read(_HEADER.size)
            if not header:
                break
            if len(header) < _HEADER.size:
                logger.warning(f"Ignoring torn record header at offset {good_offset} of {path}")
                break
            (size,) = _HEADER.unpack(header)
            data = f.read(size)
            if len(data) < size:
                logger.warning(f"Ignoring torn record at offset {good_offset} of {path}")
                break
            try:
                records.append(cloudpickle.loads(data))
            except Exception as e:
                raise JournalError(f"Corrupt record at offset {good_offset} of {path}: {e!r}") from e
            good_offset = f.tell()
    return records, good_offset
