"""
Crash safety: whatever ends a run, everything collected up to that point
reaches the store.
"""

import io
import json
import signal

import pytest

from xscraper.engine import CollectionRun
from xscraper.interrupt import InterruptHandler
from xscraper.runner import COMPLETED, FAILED, STOPPED, RunOutcome, execute_run
from xscraper.store import JsonStore
from tests.fakes import (
    RecordingStore,
    ScriptedExtractor,
    ScriptedScrollDriver,
    fresh_batches,
    growing_heights,
)


def stored_ids(path):
    with open(path, encoding='utf-8') as f:
        return [item['id'] for item in json.load(f)]


class TestExecuteRun:
    def test_completed_run(self, fast_config, tmp_path):
        path = tmp_path / 'out.json'
        run = CollectionRun(ScriptedExtractor(fresh_batches(10, 2)), ScriptedScrollDriver([100, 150, 150, 150]),
                            JsonStore(path), config=fast_config())
        finished = []
        outcome = execute_run(run, on_finish=finished.append)

        assert outcome.status == COMPLETED
        assert outcome.exit_code == 0
        assert outcome.collected == 8
        assert outcome.persisted == 8
        assert outcome.added == 8
        assert finished == [outcome]
        assert len(stored_ids(path)) == 8

    def test_crash_keeps_everything_extracted_so_far(self, fast_config, tmp_path):
        path = tmp_path / 'out.json'
        batches = fresh_batches(10, 3)
        run = CollectionRun(ScriptedExtractor(batches), ScriptedScrollDriver(growing_heights(), fail_on_advance=3),
                            JsonStore(path), config=fast_config())
        outcome = execute_run(run)

        assert outcome.status == FAILED
        assert outcome.exit_code == 1
        assert "browser went away" in outcome.error
        assert stored_ids(path) == [r.id for batch in batches[:3] for r in batch]

    def test_exhausted_before_limit_is_reported(self, fast_config, caplog):
        run = CollectionRun(ScriptedExtractor(fresh_batches(4, 20)), ScriptedScrollDriver([0, 100, 200, 300, 400]),
                            RecordingStore(), config=fast_config(max_records=500))
        outcome = execute_run(run)

        assert outcome.status == COMPLETED
        assert outcome.exhausted_before_limit
        assert outcome.max_records == 500
        assert "80/500" in caplog.text

    def test_stop_request_flushes_and_exits_130(self, fast_config, tmp_path):
        path = tmp_path / 'out.json'
        batches = fresh_batches(10, 3)
        extractor = ScriptedExtractor([])
        run = CollectionRun(extractor, ScriptedScrollDriver(growing_heights()), JsonStore(path), config=fast_config())

        def second_batch():
            run.request_stop("SIGINT")
            return batches[1]

        extractor.batches = [batches[0], second_batch, batches[2]]
        outcome = execute_run(run)

        assert outcome.status == STOPPED
        assert outcome.exit_code == 130
        assert len(stored_ids(path)) == 6

    def test_forced_abort_still_flushes(self, fast_config):
        store = RecordingStore(fail_always=False)
        batches = fresh_batches(10, 2)
        run = CollectionRun(ScriptedExtractor([batches[0], batches[1], KeyboardInterrupt()]),
                            ScriptedScrollDriver(growing_heights()), store, config=fast_config())
        outcome = execute_run(run)

        assert outcome.status == STOPPED
        assert len(store.saved) == 4
        # two loop flushes plus the final one
        assert store.calls == 3

    def test_final_flush_recovers_from_earlier_failures(self, fast_config):
        store = RecordingStore(fail_on=[1, 2, 3, 4])
        run = CollectionRun(ScriptedExtractor(fresh_batches(10, 2)), ScriptedScrollDriver([100, 150, 150, 150]),
                            store, config=fast_config())
        outcome = execute_run(run)

        assert outcome.status == COMPLETED
        assert outcome.persisted == 8
        assert store.calls == 5

    def test_failed_final_flush_fails_the_run(self, fast_config):
        run = CollectionRun(ScriptedExtractor(fresh_batches(10, 2)), ScriptedScrollDriver([100, 150, 150, 150]),
                            RecordingStore(fail_always=True), config=fast_config())
        outcome = execute_run(run)

        assert outcome.status == FAILED
        assert outcome.exit_code == 1
        assert "final flush failed" in outcome.error
        assert outcome.collected == 8
        assert outcome.persisted == 0

    def test_corrupt_output_file_is_not_overwritten(self, fast_config, tmp_path):
        path = tmp_path / 'out.json'
        path.write_text("{oops", encoding='utf-8')
        run = CollectionRun(ScriptedExtractor(fresh_batches(10, 2)), ScriptedScrollDriver([100, 150, 150, 150]),
                            JsonStore(path), config=fast_config())
        outcome = execute_run(run)

        assert outcome.status == FAILED
        assert path.read_text(encoding='utf-8') == "{oops"

    def test_interrupt_handler_is_removed_afterwards(self, fast_config):
        before = signal.getsignal(signal.SIGINT)
        run = CollectionRun(ScriptedExtractor(fresh_batches(3, 1)), ScriptedScrollDriver([100, 150, 150, 150]),
                            RecordingStore(), config=fast_config())
        execute_run(run, interrupt_handler=InterruptHandler(run.request_stop, watch_keyboard=False))
        assert signal.getsignal(signal.SIGINT) == before

    def test_outcome_serializes(self):
        outcome = RunOutcome(status=STOPPED, collected=3, persisted=3)
        assert outcome.to_dict()['status'] == 'stopped'


class TestInterruptHandler:
    def test_first_signal_requests_stop(self):
        reasons = []
        handler = InterruptHandler(reasons.append, watch_keyboard=False)
        with handler:
            assert signal.getsignal(signal.SIGTERM) == handler._handle_signal
            handler._handle_signal(signal.SIGTERM, None)
        assert reasons == ['SIGTERM']

    def test_second_signal_aborts(self):
        handler = InterruptHandler(lambda reason: None, watch_keyboard=False)
        with handler:
            handler._handle_signal(signal.SIGINT, None)
            with pytest.raises(KeyboardInterrupt):
                handler._handle_signal(signal.SIGINT, None)

    def test_uninstall_restores_previous_handlers(self):
        before = signal.getsignal(signal.SIGTERM)
        handler = InterruptHandler(lambda reason: None, watch_keyboard=False)
        handler.install()
        handler.uninstall()
        assert signal.getsignal(signal.SIGTERM) == before

    def test_trigger_ignored_when_not_installed(self):
        reasons = []
        handler = InterruptHandler(reasons.append, watch_keyboard=False)
        handler.trigger('late')
        assert reasons == []

    def test_quit_key_requests_stop(self):
        reasons = []
        handler = InterruptHandler(reasons.append, stdin=io.StringIO("hello\n Q \nq\n"))
        with handler:
            handler._watch_keyboard()
        assert reasons == ['quit key']
