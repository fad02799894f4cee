import os
import json
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Sequence

from pymongo import MongoClient, ASCENDING, UpdateOne
from pymongo.errors import PyMongoError

from xscraper.models import Record

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """A flush could not read or write the durable store."""


class StoreCorruptError(StoreError):
    """The persisted document exists but cannot be parsed as a list of records."""


@dataclass
class FlushResult:
    added: int
    total: int


def merge(existing: Sequence[Record], new_records: Sequence[Record]) -> List[Record]:
    """
    Union keyed by id. Existing records keep their position and content;
    unseen new records are appended in the order given.
    """
    seen = {record.id for record in existing}
    merged = list(existing)
    for record in new_records:
        if record.id in seen:
            continue
        seen.add(record.id)
        merged.append(record)
    return merged


def write_json_atomic(path, data: Any):
    """Write `data` as JSON next to `path`, then swap it into place."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix='.tmp', dir=str(path.parent))
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


# ===============================================
# ||             JSON FILE STORE               ||
# ===============================================
class JsonStore:
    """An ordered array of records in one JSON file."""
    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> List[Record]:
        """Reads the persisted records. A missing file is an empty store."""
        if not self.path.exists():
            return []
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except ValueError as e:
            raise StoreCorruptError(f"{self.path} is not valid JSON: {e}") from e
        except OSError as e:
            raise StoreError(f"Could not read {self.path}: {e}") from e

        if not isinstance(data, list):
            raise StoreCorruptError(f"{self.path} holds a {type(data).__name__}, expected an array of records")

        records = []
        for index, item in enumerate(data):
            if not isinstance(item, dict) or not item.get('id'):
                raise StoreCorruptError(f"{self.path}: entry {index} has no id")
            records.append(Record.from_dict(item))
        return records

    def count(self) -> int:
        return len(self.load())

    def flush(self, records: Sequence[Record]) -> FlushResult:
        """Read-merge-write cycle. The file is replaced atomically or left untouched."""
        existing = self.load()
        merged = merge(existing, records)
        try:
            write_json_atomic(self.path, [record.to_dict() for record in merged])
        except OSError as e:
            raise StoreError(f"Could not write {self.path}: {e}") from e

        result = FlushResult(added=len(merged) - len(existing), total=len(merged))
        logger.info(f"Flushed {result.added} new records; total {result.total} saved to {self.path}")
        return result

    def __repr__(self) -> str:
        return f"JsonStore({str(self.path)!r})"


# ===============================================
# ||              MONGODB STORE                ||
# ===============================================
class MongoStore:
    """Insert-only record store in a MongoDB collection."""
    def __init__(self, uri: Optional[str] = None, db_name: str = 'x_scraping',
                 collection_name: str = 'posts', collection=None):
        if collection is None:
            try:
                client = MongoClient(uri)
                collection = client[db_name][collection_name]
                collection.create_index([('id', ASCENDING)], unique=True)
                logger.info("Successfully connected to MongoDB.")
            except PyMongoError as e:
                logger.error(f"Failed to connect to MongoDB: {e}")
                raise StoreError(f"MongoDB unavailable: {e}") from e
        self.collection = collection

    def load(self) -> List[Record]:
        try:
            return [Record.from_dict(doc) for doc in self.collection.find({}, {'_id': 0})]
        except PyMongoError as e:
            raise StoreError(f"Could not read from MongoDB: {e}") from e

    def count(self) -> int:
        try:
            return self.collection.count_documents({})
        except PyMongoError as e:
            raise StoreError(f"Could not count MongoDB documents: {e}") from e

    def flush(self, records: Sequence[Record]) -> FlushResult:
        """
        Upserts with $setOnInsert, so a document already stored under an id is
        never modified.
        """
        operations = [
            UpdateOne({'id': record.id}, {'$setOnInsert': record.to_dict()}, upsert=True)
            for record in records
        ]
        try:
            added = 0
            if operations:
                result = self.collection.bulk_write(operations, ordered=False)
                added = result.upserted_count
            total = self.collection.count_documents({})
        except PyMongoError as e:
            raise StoreError(f"MongoDB flush failed: {e}") from e

        logger.info(f"Inserted {added} new records; total {total} in collection '{self.collection.name}'")
        return FlushResult(added=added, total=total)

    def __repr__(self) -> str:
        return f"MongoStore({self.collection.name!r})"
