"""
Corpus Packer Module
====================
Stores accepted programs in the corpus database under content hash keys.
"""

import hashlib
import logging
import os
from pathlib import Path
from typing import Iterable, List, Mapping, Union

from corpus_db import CorpusDB
from program import Program

logger = logging.getLogger(__name__)

# Version 3 marks the records as already minimized.
CURRENT_DB_VERSION = 3


def hash_string(data: bytes) -> str:
    """Hex SHA-1 digest used as the corpus key of ``data``."""
    return hashlib.sha1(data).hexdigest()


def disambiguate_key(key: str, index: int, records: Mapping[str, object]) -> str:
    """
    Return a key not present in ``records``.

    A taken key gets the program's processing index appended; if that is
    taken as well, ``-1``, ``-2``, ... follow.
    """
    if key not in records:
        return key
    candidate = f"{key}{index}"
    n = 1
    while candidate in records:
        candidate = f"{key}{index}-{n}"
        n += 1
    return candidate


def pack(progs: Iterable[Program], corpus_path: Union[str, Path] = "corpus.db",
         fresh: bool = True, version: int = CURRENT_DB_VERSION) -> List[str]:
    """
    Write ``progs`` into the corpus database at ``corpus_path``.

    Args:
        progs: Accepted programs in processing order
        corpus_path: Database file
        fresh: Remove an existing database before writing
        version: Version tag stored in the database

    Returns:
        Keys the programs were stored under, in input order

    Raises:
        CorpusDBError: the database cannot be opened or flushed
    """
    corpus_path = Path(corpus_path)
    if fresh:
        try:
            os.remove(corpus_path)
            logger.info(f"Removed existing corpus database {corpus_path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove {corpus_path}: {e}")

    db = CorpusDB.open(corpus_path)
    db.bump_version(version)

    keys: List[str] = []
    for i, prog in enumerate(progs):
        data = prog.serialize()
        key = hash_string(data)
        if key in db.records:
            new_key = disambiguate_key(key, i, db.records)
            logger.debug(f"Key {key} already stored, using {new_key}")
            key = new_key
        db.save(key, data, 0)
        keys.append(key)

    db.flush()
    logger.info(f"Packed {len(keys)} programs into {corpus_path} (version {version})")
    return keys
