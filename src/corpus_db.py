#!/usr/bin/env python3
"""
Corpus Database
===============
Append/rewrite key-value store holding serialized programs.

File layout (little-endian):
- header: 8-byte magic, uint32 format version
- records: uint8 op, uint16 key length, key, uint64 seq,
  uint32 value length, zlib-compressed value

Saves and deletes are buffered in memory and reach the disk only on
``flush()``. A version bump or a repaired file forces a full rewrite through
a temporary file; otherwise pending records are appended.
"""

import logging
import os
import struct
import tempfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Tuple, Union

logger = logging.getLogger(__name__)

DB_MAGIC = b"T2CORPUS"
_HEADER = struct.Struct("<8sI")
_RECORD_HEAD = struct.Struct("<BH")
_RECORD_TAIL = struct.Struct("<QI")

OP_SAVE = 1
OP_DELETE = 2


class CorpusDBError(OSError):
    """The corpus database cannot be opened, parsed or written."""


@dataclass
class Record:
    val: bytes
    seq: int = 0


class CorpusDB:
    """In-memory view of a corpus database file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.version = 0
        self.records: Dict[str, Record] = {}
        self._pending: List[bytes] = []
        self._rewrite = False

    @classmethod
    def open(cls, path: Union[str, Path], repair: bool = False) -> "CorpusDB":
        """
        Open (or create) the database at ``path``.

        Args:
            path: Database file
            repair: Keep the readable prefix of a corrupted file instead of failing

        Raises:
            CorpusDBError: the file cannot be created, read or parsed
        """
        db = cls(path)
        if not db.path.exists():
            db._rewrite = True
            db.flush()
            logger.debug(f"Created corpus database {db.path}")
            return db

        try:
            data = db.path.read_bytes()
        except OSError as e:
            raise CorpusDBError(f"failed to read corpus database {db.path}: {e}") from e

        try:
            db._load(data)
        except ValueError as e:
            if not repair:
                raise CorpusDBError(f"corrupted corpus database {db.path}: {e}") from e
            logger.warning(f"Repairing corpus database {db.path}: {e} "
                           f"({len(db.records)} records recovered)")
            db._rewrite = True
        logger.debug(f"Opened corpus database {db.path}: version {db.version}, "
                     f"{len(db.records)} records")
        return db

    def _load(self, data: bytes) -> None:
        if len(data) < _HEADER.size:
            raise ValueError("truncated header")
        magic, self.version = _HEADER.unpack_from(data, 0)
        if magic != DB_MAGIC:
            raise ValueError(f"bad magic {magic!r}")

        pos = _HEADER.size
        while pos < len(data):
            key, seq, val, pos = self._read_record(data, pos)
            if val is None:
                self.records.pop(key, None)
            else:
                self.records[key] = Record(val, seq)

    @staticmethod
    def _read_record(data: bytes, pos: int) -> Tuple[str, int, Union[bytes, None], int]:
        if pos + _RECORD_HEAD.size > len(data):
            raise ValueError(f"truncated record at offset {pos}")
        op, key_len = _RECORD_HEAD.unpack_from(data, pos)
        pos += _RECORD_HEAD.size
        key = data[pos:pos + key_len].decode("utf-8")
        pos += key_len
        if pos + _RECORD_TAIL.size > len(data):
            raise ValueError(f"truncated record '{key}'")
        seq, val_len = _RECORD_TAIL.unpack_from(data, pos)
        pos += _RECORD_TAIL.size
        if pos + val_len > len(data):
            raise ValueError(f"truncated value of record '{key}'")
        raw = data[pos:pos + val_len]
        pos += val_len

        if op == OP_DELETE:
            return key, seq, None, pos
        if op != OP_SAVE:
            raise ValueError(f"unknown record op {op} for '{key}'")
        try:
            return key, seq, zlib.decompress(raw), pos
        except zlib.error as e:
            raise ValueError(f"bad value of record '{key}': {e}") from None

    @staticmethod
    def _encode(op: int, key: str, val: bytes, seq: int) -> bytes:
        key_bytes = key.encode("utf-8")
        packed = zlib.compress(val) if op == OP_SAVE else b""
        return (_RECORD_HEAD.pack(op, len(key_bytes)) + key_bytes
                + _RECORD_TAIL.pack(seq, len(packed)) + packed)

    def bump_version(self, version: int) -> None:
        if self.version != version:
            self.version = version
            self._rewrite = True

    def save(self, key: str, val: bytes, seq: int = 0) -> None:
        self.records[key] = Record(bytes(val), seq)
        self._pending.append(self._encode(OP_SAVE, key, val, seq))

    def delete(self, key: str) -> None:
        if key not in self.records:
            return
        del self.records[key]
        self._pending.append(self._encode(OP_DELETE, key, b"", 0))

    def flush(self) -> None:
        """
        Persist pending changes.

        Raises:
            CorpusDBError: the file cannot be written
        """
        try:
            if self._rewrite:
                self._write_all()
            elif self._pending:
                with open(self.path, "ab") as f:
                    f.write(b"".join(self._pending))
        except OSError as e:
            raise CorpusDBError(f"failed to write corpus database {self.path}: {e}") from e
        self._pending = []
        self._rewrite = False

    def _write_all(self) -> None:
        directory = self.path.parent if str(self.path.parent) else Path(".")
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=directory)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(_HEADER.pack(DB_MAGIC, self.version))
                for key, rec in self.records.items():
                    f.write(self._encode(OP_SAVE, key, rec.val, rec.seq))
            os.replace(tmp_name, self.path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
