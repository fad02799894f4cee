import logging
import argparse
from pathlib import Path
from typing import List, Optional

from xscraper.config import (
    HEADLESS, MAX_NO_GROWTH, SCROLL_DELAY_MS, PROFILE_SCROLL_DELAY_MS, PROFILE_POST_LIMIT,
    OUTPUT_DIR, DEBUG_DIR, SERVER_HOST, SERVER_PORT,
    TWITTER_USERNAME, TWITTER_PASSWORD, TWITTER_EMAIL, MONGO_DB_URI,
    CollectionConfig, setup_logging,
)
from xscraper.extractors import PROFILE_TABS, SEARCH_TABS, build_search_url

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='x-scraper', description="Incremental, crash-safe collector for X (Twitter) posts.")
    parser.add_argument('-v', '--verbose', action='store_true', help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest='command', required=True)

    scrape = subparsers.add_parser('scrape', help="Collect posts from a search into a JSON file (or MongoDB).")
    scrape.add_argument('--user', type=str, help="Only posts from this account.")
    scrape.add_argument('--query', type=str, help="Search terms.")
    scrape.add_argument('--since', type=str, help="Earliest date, YYYY-MM-DD.")
    scrape.add_argument('--until', type=str, help="Latest date, YYYY-MM-DD.")
    scrape.add_argument('--tab', choices=list(SEARCH_TABS), default='latest', help="Search results tab.")
    scrape.add_argument('--limit', type=int, default=None, help="Maximum number of posts to collect (default: unbounded).")
    scrape.add_argument('--lang', type=str, help="Language code, e.g. en.")
    scrape.add_argument('--outfile', type=str, default=str(Path(OUTPUT_DIR) / 'tweets.json'), help="Output JSON file.")
    scrape.add_argument('--max-no-new', type=int, default=MAX_NO_GROWTH, help="Scrolls without page growth before stopping.")
    scrape.add_argument('--scroll-delay', type=int, default=SCROLL_DELAY_MS, help="Milliseconds to wait after each scroll.")
    scrape.add_argument('--headless', action=argparse.BooleanOptionalAction, default=HEADLESS, help="Run the browser without a window.")
    scrape.add_argument('--status-file', type=str, help="Write progress and the final outcome to this JSON file.")
    scrape.add_argument('--mongo-uri', type=str, default=MONGO_DB_URI, help="Store posts in MongoDB instead of --outfile.")
    scrape.add_argument('--no-sentiment', action='store_true', help="Skip sentiment scoring.")
    scrape.add_argument('--debug-dir', type=str, default=DEBUG_DIR, help="Where a failed run saves a screenshot and the page HTML (empty to disable).")

    profile = subparsers.add_parser('profile', help="Analyze one account's profile and posts.")
    profile.add_argument('--username', type=str, required=True, help="Account to analyze.")
    profile.add_argument('--tab', choices=list(PROFILE_TABS) + ['all'], default='posts', help="Profile tab(s) to analyze.")
    profile.add_argument('--limit', type=int, default=PROFILE_POST_LIMIT, help="Maximum posts per tab.")
    profile.add_argument('--outfile', type=str, help="Output JSON file (default: out/<username>_profile.json).")
    profile.add_argument('--status-file', type=str, help="Write the final outcome to this JSON file.")
    profile.add_argument('--min-word-length', type=int, default=2, help="Shortest word counted in the word analysis.")
    profile.add_argument('--language', type=str, default='en', help="Stopword language.")
    profile.add_argument('--include-stopwords', action='store_true', help="Count stopwords too.")
    profile.add_argument('--scroll-delay', type=int, default=PROFILE_SCROLL_DELAY_MS, help="Milliseconds to wait after each scroll.")
    profile.add_argument('--headless', action=argparse.BooleanOptionalAction, default=HEADLESS, help="Run the browser without a window.")
    profile.add_argument('--debug-dir', type=str, default=DEBUG_DIR, help="Where a failed run saves a screenshot and the page HTML (empty to disable).")

    subparsers.add_parser('login', help="Log in with a visible browser and save session cookies.")

    serve = subparsers.add_parser('serve', help="Run the job API server.")
    serve.add_argument('--host', type=str, default=SERVER_HOST)
    serve.add_argument('--port', type=int, default=SERVER_PORT)
    return parser


# ===============================================
# ||              COMMANDS                     ||
# ===============================================
def run_scrape(args) -> int:
    from xscraper.analysis import SentimentAnalyzer
    from xscraper.browser import BrowserSession
    from xscraper.engine import CollectionRun
    from xscraper.extractors import PostExtractor, SeleniumScrollDriver, save_debug_snapshot
    from xscraper.interrupt import InterruptHandler
    from xscraper.jobs import JobStatusWriter
    from xscraper.runner import FAILED, execute_run
    from xscraper.store import JsonStore, MongoStore, StoreError

    config = CollectionConfig(max_records=args.limit, max_no_growth=args.max_no_new, scroll_delay_ms=args.scroll_delay)
    url = build_search_url(query=args.query, user=args.user, since=args.since, until=args.until, lang=args.lang, tab=args.tab)

    try:
        store = MongoStore(uri=args.mongo_uri) if args.mongo_uri else JsonStore(args.outfile)
        logger.info(f"Existing records in {store!r}: {store.count()}")
    except StoreError as e:
        logger.error(f"Cannot use output store: {e}")
        return 1

    status_writer = JobStatusWriter(args.status_file) if args.status_file else None
    annotate = None if args.no_sentiment else SentimentAnalyzer().annotate

    with BrowserSession(headless=args.headless) as session:
        if not session.ensure_logged_in(TWITTER_USERNAME, TWITTER_PASSWORD, TWITTER_EMAIL):
            return 1
        session.open(url)

        run = CollectionRun(
            PostExtractor(session.driver),
            SeleniumScrollDriver(session.driver),
            store,
            config=config,
            annotate=annotate,
            on_flush=status_writer.progress if status_writer else None,
        )
        outcome = execute_run(
            run,
            interrupt_handler=InterruptHandler(run.request_stop),
            on_finish=status_writer.finish if status_writer else None,
        )
        if outcome.status == FAILED and args.debug_dir:
            save_debug_snapshot(session.driver, args.debug_dir, 'error-state')
    return outcome.exit_code


def run_profile(args) -> int:
    from xscraper.browser import BrowserSession
    from xscraper.interrupt import InterruptHandler
    from xscraper.extractors import save_debug_snapshot
    from xscraper.jobs import JobStatusWriter
    from xscraper.profiler import ProfileAnalyzer, write_report
    from xscraper.runner import COMPLETED, FAILED, STOPPED, RunOutcome

    username = args.username.lstrip('@')
    outfile = args.outfile or str(Path(OUTPUT_DIR) / f"{username}_profile.json")
    config = CollectionConfig(max_records=args.limit, scroll_delay_ms=args.scroll_delay)

    status = FAILED
    error = None
    with BrowserSession(headless=args.headless) as session:
        if not session.ensure_logged_in(TWITTER_USERNAME, TWITTER_PASSWORD, TWITTER_EMAIL):
            return 1

        profiler = ProfileAnalyzer(
            session,
            config=config,
            min_word_length=args.min_word_length,
            exclude_stopwords=not args.include_stopwords,
            language=args.language,
        )
        handler = InterruptHandler(profiler.request_stop)
        handler.install()
        try:
            result = profiler.analyze(username, args.tab)
            write_report(outfile, result)
            status = STOPPED if profiler.stop_reason else COMPLETED
        except KeyboardInterrupt:
            logger.warning("Aborted, saving partial results")
            write_report(outfile, profiler.result)
            status = STOPPED
        except Exception as e:
            logger.exception(f"Error during profile analysis: {e}")
            error = f"{type(e).__name__}: {e}"
            if args.debug_dir:
                save_debug_snapshot(session.driver, args.debug_dir, 'error-state')
            if profiler.result.get('profile') or profiler.result.get('posts'):
                logger.info("Saving partial results due to error")
                write_report(outfile, profiler.result, error=e)
        finally:
            handler.uninstall()

    collected = sum(len(posts) for posts in profiler.result.get('posts', {}).values())
    outcome = RunOutcome(status=status, collected=collected, persisted=collected if status != FAILED else 0, error=error)
    if args.status_file:
        JobStatusWriter(args.status_file).finish(outcome)
    return outcome.exit_code


def run_login(args) -> int:
    from xscraper.browser import BrowserSession, BASE_URL

    with BrowserSession(headless=False) as session:
        if TWITTER_USERNAME and TWITTER_PASSWORD:
            return 0 if session.login(TWITTER_USERNAME, TWITTER_PASSWORD, TWITTER_EMAIL) else 1
        # No credentials configured: the user logs in by hand in the opened window.
        session.driver.get(f"{BASE_URL}/login")
        input("Log in using the browser window, then press Enter here to save the session...")
        session.save_cookies()
    return 0


def run_serve(args) -> int:
    from xscraper.jobs import JobManager
    from xscraper.server import create_app, find_free_port

    port = find_free_port(args.port, host=args.host)
    if port != args.port:
        logger.info(f"Port {args.port} is busy, using {port} instead")
    app = create_app(JobManager())
    logger.info(f"Serving job API on http://{args.host}:{port}")
    app.run(host=args.host, port=port)
    return 0


COMMANDS = {
    'scrape': run_scrape,
    'profile': run_profile,
    'login': run_login,
    'serve': run_serve,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == 'scrape' and not (args.user or args.query):
        parser.error("scrape needs --user or --query")
    if args.command in ('scrape', 'profile'):
        try:
            CollectionConfig(max_records=args.limit, scroll_delay_ms=args.scroll_delay,
                             max_no_growth=getattr(args, 'max_no_new', MAX_NO_GROWTH))
        except ValueError as e:
            parser.error(str(e))

    setup_logging(verbose=args.verbose)
    try:
        return COMMANDS[args.command](args)
    except Exception as e:
        logger.error(f"A critical error occurred in main execution: {e}")
        return 1
