# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from overrides import overrides

from vpcflow.core.errors import StateConflict
from vpcflow.core.state import StateRecord

module_logger = logging.getLogger(__name__)


class StateStore(ABC):
    """Durable storage for the state record with optimistic concurrency.

    `save` compares the lineage and serial of the record against the stored copy and raises StateConflict when the
    stored copy has moved on (another writer saved in between). On success the serial of the record is incremented.
    """

    def __init__(self) -> None:
        self._write_lock = threading.RLock()

    @abstractmethod
    def _read(self) -> Optional[str]:
        """Return the serialized record or None if nothing has been stored yet."""
        ...

    @abstractmethod
    def _write(self, body: str) -> None:
        ...

    def load(self) -> StateRecord:
        body = self._read()
        if body is None:
            return StateRecord()
        return StateRecord.from_json(body)

    def save(self, record: StateRecord) -> None:
        with self._write_lock:
            body = self._read()
            stored = StateRecord.from_json(body) if body is not None else None
            if stored is None:
                if record.serial != 0:
                    raise StateConflict(f"State record (serial={record.serial}) no longer exists in {self!r}")
            elif stored.lineage != record.lineage or stored.serial != record.serial:
                raise StateConflict(
                    f"Stored state (lineage={stored.lineage}, serial={stored.serial}) differs from "
                    f"the state being saved (lineage={record.lineage}, serial={record.serial}). Please plan again."
                )
            previous = (record.lineage, record.serial, record.updated_at)
            record.next_serial()
            try:
                self._write(record.to_json())
            except Exception:
                record.lineage, record.serial, record.updated_at = previous
                raise
            module_logger.debug(f"Saved state record (lineage={record.lineage}, serial={record.serial}).")


class InMemoryStateStore(StateStore):
    def __init__(self, body: Optional[str] = None) -> None:
        super().__init__()
        self._body = body

    @overrides
    def _read(self) -> Optional[str]:
        return self._body

    @overrides
    def _write(self, body: str) -> None:
        self._body = body

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class LocalFileStateStore(StateStore):
    def __init__(self, path: Union[str, Path]) -> None:
        super().__init__()
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    @overrides
    def _read(self) -> Optional[str]:
        if not self._path.exists():
            return None
        return self._path.read_text(encoding="utf-8")

    @overrides
    def _write(self, body: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        # readers never observe a partially written record
        fd, tmp_path = tempfile.mkstemp(dir=str(self._path.parent), prefix=f".{self._path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp_file:
                tmp_file.write(body)
            os.replace(tmp_path, self._path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({str(self._path)!r})"
