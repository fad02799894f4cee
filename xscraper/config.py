import os
import logging
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

# ================= Configuration =================
# General settings
HEADLESS = os.getenv('XSCRAPER_HEADLESS', 'true').lower() != 'false'
TIMEOUT = int(os.getenv('XSCRAPER_TIMEOUT', '15')) # Default timeout for Selenium waits

# Scraping behavior
MAX_NO_GROWTH = 3 # Consecutive scrolls without page growth before the feed counts as exhausted
SCROLL_DELAY_MS = int(os.getenv('XSCRAPER_SCROLL_DELAY_MS', '500'))
PROFILE_SCROLL_DELAY_MS = 800
RETRY_BACKOFF_MS = 3000 # Wait before re-reading a page that was torn down mid-extraction
PROFILE_POST_LIMIT = 200

# Files and directories
OUTPUT_DIR = os.getenv('XSCRAPER_OUTPUT_DIR', 'out')
JOB_DIR = os.getenv('XSCRAPER_JOB_DIR', 'jobs')
COOKIES_FILE = os.getenv('XSCRAPER_COOKIES_FILE', 'twitter_cookies.json')
LOG_FILE = os.getenv('XSCRAPER_LOG_FILE', 'x_scraper.log')
DEBUG_DIR = os.getenv('XSCRAPER_DEBUG_DIR', 'debug') # Screenshots and page HTML from failed runs

# Dashboard
SERVER_HOST = '127.0.0.1'
SERVER_PORT = int(os.getenv('PORT', '3000'))

# Credentials (never stored, read from the environment / .env only)
TWITTER_USERNAME = os.getenv('TWITTER_USERNAME')
TWITTER_PASSWORD = os.getenv('TWITTER_PASSWORD')
TWITTER_EMAIL = os.getenv('TWITTER_EMAIL') # Optional, for verification
MONGO_DB_URI = os.getenv('MONGO_DB_URI')


@dataclass
class CollectionConfig:
    """Knobs for one collection run."""
    max_records: Optional[int] = None
    max_no_growth: int = MAX_NO_GROWTH
    scroll_delay_ms: int = SCROLL_DELAY_MS
    retry_backoff_ms: int = RETRY_BACKOFF_MS

    def __post_init__(self):
        if self.max_records is not None and self.max_records <= 0:
            raise ValueError(f"max_records must be positive or None, got {self.max_records}")
        if self.max_no_growth <= 0:
            raise ValueError(f"max_no_growth must be positive, got {self.max_no_growth}")
        if self.scroll_delay_ms < 0 or self.retry_backoff_ms < 0:
            raise ValueError("Delays must be non-negative")


def setup_logging(verbose: bool = False, log_file: str = LOG_FILE):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - [%(funcName)s] - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )
