"""
Incremental collection engine.

One `CollectionRun` drives an injected PageExtractor and ScrollDriver over an
infinitely scrolling feed: extract, dedupe into the accumulator, flush,
scroll, wait, and compare the page height. The run ends when the record
limit is reached, when the page stops growing for `max_no_growth`
consecutive scrolls, or when a stop is requested.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from xscraper.config import CollectionConfig
from xscraper.models import Record
from xscraper.store import FlushResult, StoreError

logger = logging.getLogger(__name__)


class TransientExtractionError(Exception):
    """The page context was torn down mid-read. Retry the same iteration."""


class PageExtractor(ABC):
    @abstractmethod
    def extract(self) -> List[Record]:
        """Return every candidate record currently on the page. Ids may be empty."""
        ...


class ScrollDriver(ABC):
    @abstractmethod
    def advance(self):
        """Scroll by one viewport."""
        ...

    @abstractmethod
    def current_height(self) -> int:
        ...


@dataclass
class CollectionResult:
    records: List[Record]
    iterations: int
    exhausted: bool
    stopped: bool
    max_records: Optional[int] = None

    @property
    def exhausted_before_limit(self) -> bool:
        return (
            self.exhausted
            and self.max_records is not None
            and len(self.records) < self.max_records
        )


class CollectionRun:
    """State and loop of a single collection run. Not shared between runs."""
    def __init__(
        self,
        extractor: PageExtractor,
        scroll_driver: ScrollDriver,
        store,
        config: Optional[CollectionConfig] = None,
        annotate: Optional[Callable[[Record], None]] = None,
        on_flush: Optional[Callable[['CollectionRun', FlushResult], None]] = None,
    ):
        self.extractor = extractor
        self.scroll_driver = scroll_driver
        self.store = store
        self.config = config or CollectionConfig()
        self.annotate = annotate
        self.on_flush = on_flush

        self.accumulator: Dict[str, Record] = {}
        self.scroll_iteration = 0
        self.no_growth_streak = 0
        self.last_height: Optional[int] = None
        self.transient_failures = 0

        self.last_flush: Optional[FlushResult] = None
        self.added_total = 0
        self.flush_error: Optional[Exception] = None
        self.stop_reason: Optional[str] = None
        self._stop = threading.Event()
        self._finalized = False

    # ---- stop requests -------------------------------------------------

    def request_stop(self, reason: str = "stop requested"):
        if not self._stop.is_set():
            self.stop_reason = reason
            logger.info(f"Stop requested ({reason}); finishing current iteration.")
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def _wait(self, delay_ms: int):
        # Returns early when a stop is requested.
        if delay_ms > 0:
            self._stop.wait(delay_ms / 1000.0)

    # ---- accumulator ---------------------------------------------------

    def _limit_reached(self) -> bool:
        limit = self.config.max_records
        return limit is not None and len(self.accumulator) >= limit

    def add(self, candidates: Sequence[Record]) -> int:
        """Insert unseen candidates; first sighting of an id wins. Returns how many were new."""
        added = 0
        for record in candidates:
            if not record.id or record.id in self.accumulator:
                continue
            if self.annotate:
                self.annotate(record)
            self.accumulator[record.id] = record
            added += 1
        return added

    def records(self) -> List[Record]:
        records = list(self.accumulator.values())
        if self.config.max_records is not None:
            records = records[:self.config.max_records]
        return records

    # ---- persistence ---------------------------------------------------

    def flush(self) -> Optional[FlushResult]:
        """Merge the accumulator into the store. Failures are logged and kept, not raised."""
        if self.store is None:
            return None
        try:
            result = self.store.flush(self.records())
        except StoreError as e:
            self.flush_error = e
            logger.error(f"Flush to {self.store!r} failed, {len(self.accumulator)} records still in memory: {e}")
            return None

        self.last_flush = result
        self.added_total += result.added
        if self.on_flush:
            self.on_flush(self, result)
        return result

    def finalize(self) -> Optional[FlushResult]:
        """Final flush. Runs once per run, whatever happened to earlier flushes."""
        if self._finalized:
            return self.last_flush
        logger.info(f"Final flush of {len(self.records())} records...")
        result = self.flush()
        # Set only once the flush returns, so an interrupted flush is retried at exit.
        self._finalized = True
        return result

    @property
    def persisted(self) -> int:
        return self.last_flush.total if self.last_flush else 0

    # ---- main loop -----------------------------------------------------

    def collect(self) -> CollectionResult:
        config = self.config
        self.last_height = self.scroll_driver.current_height()
        limit_text = config.max_records if config.max_records is not None else 'unbounded'
        logger.info(f"Starting collection (limit: {limit_text}, end of feed after {config.max_no_growth} stalled scrolls)")

        while not self._limit_reached() and self.no_growth_streak < config.max_no_growth:
            if self.stop_requested:
                break

            try:
                candidates = self.extractor.extract()
            except TransientExtractionError as e:
                self.transient_failures += 1
                logger.warning(f"Extraction error occurred ({e}); retrying in {config.retry_backoff_ms} ms")
                self._wait(config.retry_backoff_ms)
                continue

            self.scroll_iteration += 1
            added = self.add(candidates)
            logger.info(f"Scroll iteration {self.scroll_iteration}: {added} new, {len(self.accumulator)} collected so far")

            self.flush()

            self.scroll_driver.advance()
            self._wait(config.scroll_delay_ms)

            height = self.scroll_driver.current_height()
            if height == self.last_height:
                self.no_growth_streak += 1
                logger.info(f"Page height unchanged ({self.no_growth_streak}/{config.max_no_growth})")
            else:
                self.no_growth_streak = 0
                self.last_height = height

        exhausted = self.no_growth_streak >= config.max_no_growth
        result = CollectionResult(
            records=self.records(),
            iterations=self.scroll_iteration,
            exhausted=exhausted,
            stopped=self.stop_requested and not exhausted and not self._limit_reached(),
            max_records=config.max_records,
        )
        logger.info(f"Collection loop finished after {result.iterations} iterations with {len(result.records)} records")
        return result
