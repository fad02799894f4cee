import json
import os
from unittest.mock import MagicMock

import pytest
from pymongo import UpdateOne
from pymongo.errors import PyMongoError

from xscraper.models import Record
from xscraper.store import (
    FlushResult,
    JsonStore,
    MongoStore,
    StoreCorruptError,
    StoreError,
    merge,
    write_json_atomic,
)
from tests.fakes import make_records


def ids(records):
    return [record.id for record in records]


# ──────────────────────────────────────────────
# merge
# ──────────────────────────────────────────────

class TestMerge:
    def test_existing_order_then_unseen(self):
        merged = merge(make_records([1, 2, 3]), make_records([3, 4, 2, 5]))
        assert ids(merged) == ['1', '2', '3', '4', '5']

    def test_existing_content_wins(self):
        existing = [Record(id='1', body='original')]
        merged = merge(existing, [Record(id='1', body='edited')])
        assert merged[0].body == 'original'

    def test_duplicates_within_batch_collapse_to_first(self):
        batch = [Record(id='7', body='first'), Record(id='7', body='second')]
        merged = merge([], batch)
        assert len(merged) == 1
        assert merged[0].body == 'first'

    def test_idempotent(self):
        existing = make_records([1, 2])
        batch = make_records([2, 3])
        once = merge(existing, batch)
        assert ids(merge(once, batch)) == ids(once)

    def test_associative(self):
        a, b, c = make_records([1, 2]), make_records([2, 3]), make_records([3, 4, 1])
        assert ids(merge(merge(a, b), c)) == ids(merge(a, merge(b, c)))

    def test_batches_in_turn_match_their_union(self):
        existing = make_records([1, 2])
        first, second = make_records([2, 3, 4]), make_records([4, 5, 1, 6])
        in_turn = merge(merge(existing, first), second)
        at_once = merge(existing, first + second)
        assert set(ids(in_turn)) == set(ids(at_once)) == {'1', '2', '3', '4', '5', '6'}
        assert ids(in_turn) == ids(at_once)

    def test_does_not_mutate_inputs(self):
        existing = make_records([1])
        merge(existing, make_records([2]))
        assert ids(existing) == ['1']


# ──────────────────────────────────────────────
# JsonStore
# ──────────────────────────────────────────────

class TestJsonStore:
    def test_missing_file_is_empty(self, tmp_path):
        store = JsonStore(tmp_path / 'none.json')
        assert store.load() == []
        assert store.count() == 0

    def test_flush_creates_file_and_parent_dirs(self, tmp_path):
        path = tmp_path / 'nested' / 'out.json'
        result = JsonStore(path).flush(make_records([1, 2]))
        assert result == FlushResult(added=2, total=2)
        with open(path, encoding='utf-8') as f:
            assert [item['id'] for item in json.load(f)] == ['1', '2']

    def test_flush_reports_added_and_total(self, tmp_path):
        store = JsonStore(tmp_path / 'out.json')
        store.flush(make_records([1, 2]))
        result = store.flush(make_records([2, 3, 4]))
        assert result == FlushResult(added=2, total=4)
        assert ids(store.load()) == ['1', '2', '3', '4']

    def test_round_trip_keeps_fields(self, tmp_path):
        store = JsonStore(tmp_path / 'out.json')
        record = Record(
            id='99', author_handle='nasa', author_display_name='NASA', body='Liftoff 🚀',
            created_at='2024-05-01T12:00:00.000Z', permalink='https://x.com/nasa/status/99',
            media=['https://pbs.twimg.com/media/a.jpg'], engagement={'likes': '1.2K'},
            sentiment={'score': 1.0},
        )
        store.flush([record])
        assert store.load() == [record]

    def test_unknown_keys_survive_a_flush(self, tmp_path):
        path = tmp_path / 'out.json'
        path.write_text(json.dumps([{'id': '1', 'body': 'old', 'label': 'keep me'}]), encoding='utf-8')
        JsonStore(path).flush(make_records([2]))
        data = json.loads(path.read_text(encoding='utf-8'))
        assert data[0]['label'] == 'keep me'
        assert [item['id'] for item in data] == ['1', '2']

    def test_numeric_ids_are_read_as_strings(self, tmp_path):
        path = tmp_path / 'out.json'
        path.write_text(json.dumps([{'id': 5}]), encoding='utf-8')
        assert ids(JsonStore(path).load()) == ['5']

    @pytest.mark.parametrize("content", [
        "{not json",
        json.dumps({'id': '1'}),
        json.dumps([{'body': 'no id'}]),
        json.dumps(["just a string"]),
    ])
    def test_corrupt_file_is_reported_and_untouched(self, tmp_path, content):
        path = tmp_path / 'out.json'
        path.write_text(content, encoding='utf-8')
        store = JsonStore(path)
        with pytest.raises(StoreCorruptError):
            store.flush(make_records([1]))
        assert path.read_text(encoding='utf-8') == content

    def test_failed_write_keeps_previous_file(self, tmp_path, monkeypatch):
        path = tmp_path / 'out.json'
        store = JsonStore(path)
        store.flush(make_records([1]))
        before = path.read_text(encoding='utf-8')

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, 'replace', broken_replace)
        with pytest.raises(StoreError):
            store.flush(make_records([2]))

        assert path.read_text(encoding='utf-8') == before
        assert [p.name for p in tmp_path.iterdir()] == ['out.json']


def test_write_json_atomic_writes_utf8(tmp_path):
    path = tmp_path / 'doc.json'
    write_json_atomic(path, {'text': 'çok güzel'})
    assert 'çok güzel' in path.read_text(encoding='utf-8')


# ──────────────────────────────────────────────
# MongoStore
# ──────────────────────────────────────────────

class TestMongoStore:
    def make_store(self, upserted=0, total=0):
        collection = MagicMock()
        collection.name = 'posts'
        collection.bulk_write.return_value.upserted_count = upserted
        collection.count_documents.return_value = total
        return MongoStore(collection=collection), collection

    def test_flush_uses_set_on_insert(self):
        store, collection = self.make_store(upserted=2, total=5)
        result = store.flush(make_records([1, 2]))

        assert result == FlushResult(added=2, total=5)
        operations = collection.bulk_write.call_args[0][0]
        first = make_records([1])[0]
        assert len(operations) == 2
        assert operations[0] == UpdateOne({'id': '1'}, {'$setOnInsert': first.to_dict()}, upsert=True)
        assert collection.bulk_write.call_args[1] == {'ordered': False}

    def test_empty_flush_skips_bulk_write(self):
        store, collection = self.make_store(total=3)
        assert store.flush([]) == FlushResult(added=0, total=3)
        collection.bulk_write.assert_not_called()

    def test_driver_errors_become_store_errors(self):
        store, collection = self.make_store()
        collection.bulk_write.side_effect = PyMongoError("connection reset")
        with pytest.raises(StoreError):
            store.flush(make_records([1]))

    def test_load_hides_object_ids(self):
        store, collection = self.make_store()
        collection.find.return_value = [{'id': '1', 'body': 'hi'}]
        assert ids(store.load()) == ['1']
        collection.find.assert_called_once_with({}, {'_id': 0})
