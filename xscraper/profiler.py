"""
Profile analysis: header and follower stats of one account, then the posts of
each requested profile tab collected with the same engine as searches, plus a
word frequency breakdown per tab.
"""

import logging
import traceback
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Set, Union

from xscraper.analysis import analyze_word_frequency
from xscraper.config import CollectionConfig, PROFILE_POST_LIMIT, PROFILE_SCROLL_DELAY_MS
from xscraper.engine import CollectionRun, PageExtractor, ScrollDriver
from xscraper.extractors import (
    PROFILE_TABS,
    PostExtractor,
    SeleniumScrollDriver,
    build_profile_url,
    extract_profile,
)
from xscraper.models import Record
from xscraper.store import write_json_atomic

logger = logging.getLogger(__name__)


def resolve_tabs(tabs: Union[str, Sequence[str]]) -> List[str]:
    if isinstance(tabs, str):
        tabs = [tabs]
    if 'all' in tabs:
        return list(PROFILE_TABS)
    unknown = [tab for tab in tabs if tab not in PROFILE_TABS]
    if unknown:
        raise ValueError(f"Unknown profile tab(s) {unknown}, expected 'all' or one of {list(PROFILE_TABS)}")
    return list(dict.fromkeys(tabs))


# ===============================================
# ||            PROFILE ANALYZER               ||
# ===============================================
class ProfileAnalyzer:
    def __init__(
        self,
        session,
        config: Optional[CollectionConfig] = None,
        extractor_factory: Callable[[object], PageExtractor] = PostExtractor,
        scroll_factory: Callable[[object], ScrollDriver] = SeleniumScrollDriver,
        profile_reader: Callable = extract_profile,
        annotate: Optional[Callable[[Record], None]] = None,
        min_word_length: int = 2,
        exclude_stopwords: bool = True,
        language: str = 'en',
        stopwords: Optional[Set[str]] = None,
    ):
        self.session = session
        self.config = config or CollectionConfig(max_records=PROFILE_POST_LIMIT, scroll_delay_ms=PROFILE_SCROLL_DELAY_MS)
        self.extractor_factory = extractor_factory
        self.scroll_factory = scroll_factory
        self.profile_reader = profile_reader
        self.annotate = annotate
        self.min_word_length = min_word_length
        self.exclude_stopwords = exclude_stopwords
        self.language = language
        self.stopwords = stopwords

        self.result: Dict = {}
        self.current_run: Optional[CollectionRun] = None
        self.stop_reason: Optional[str] = None

    def request_stop(self, reason: str = "stop requested"):
        """Stops the tab being collected and skips the remaining ones."""
        self.stop_reason = reason
        if self.current_run is not None:
            self.current_run.request_stop(reason)

    def analyze(self, handle: str, tabs: Union[str, Sequence[str]] = 'posts') -> Dict:
        """
        Fills and returns `self.result`. The dict is built up in place so a caller
        that catches an error can still write out what was gathered so far.
        """
        handle = handle.lstrip('@')
        tabs = resolve_tabs(tabs)
        self.result = {
            'username': handle,
            'analyzed_at': datetime.now(timezone.utc).isoformat(),
            'profile': {},
            'stats': {},
            'posts': {},
            'word_analysis': {},
        }
        logger.info(f"Analyzing profile @{handle} (tabs: {', '.join(tabs)})")

        self.session.open(build_profile_url(handle), wait_selector="div[data-testid='UserName']")
        profile, stats = self.profile_reader(self.session.driver)
        self.result['profile'] = profile
        self.result['stats'] = stats
        logger.info(f"User @{handle} has {stats.get('followers')} followers and {stats.get('following')} following")

        for tab in tabs:
            if self.stop_reason:
                logger.info(f"Skipping {tab} tab ({self.stop_reason})")
                continue
            self._analyze_tab(handle, tab)

        return self.result

    def _analyze_tab(self, handle: str, tab: str):
        url = build_profile_url(handle, tab)
        logger.info(f"Navigating to {tab} tab: {url}")
        if not self.session.open(url):
            logger.warning(f"Could not detect posts on {tab} tab, skipping")
            return

        driver = self.session.driver
        run = CollectionRun(
            self.extractor_factory(driver),
            self.scroll_factory(driver),
            store=None,
            config=self.config,
            annotate=self.annotate,
        )
        self.current_run = run
        try:
            collected = run.collect()
        finally:
            self.current_run = None
            # Whatever was gathered before an abort still goes into the report.
            self.result['posts'][tab] = [record.to_dict() for record in run.records()]

        records = collected.records
        logger.info(f"Collected {len(records)} posts from the {tab} tab")

        analysis = analyze_word_frequency(
            records,
            min_word_length=self.min_word_length,
            exclude_stopwords=self.exclude_stopwords,
            language=self.language,
            stopwords=self.stopwords,
        )
        self.result['word_analysis'][tab] = analysis
        logger.info(f"Word analysis for {tab} tab: {analysis['analyzed_posts']} posts, "
                    f"{analysis['total_words']} total words, {analysis['unique_words']} unique words")


def write_report(path, result: Dict, error: Optional[BaseException] = None):
    """Writes the report atomically. With `error`, the partial result carries an error block."""
    document = dict(result)
    if error is not None:
        document['error'] = {
            'message': str(error),
            'type': type(error).__name__,
            'traceback': ''.join(traceback.format_exception(type(error), error, error.__traceback__)),
        }
    write_json_atomic(path, document)
    logger.info(f"Profile analysis saved to {path}")
