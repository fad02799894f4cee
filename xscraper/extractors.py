"""
Selenium implementations of the engine's PageExtractor and ScrollDriver,
plus URL builders for search and profile pages.

Selectors track the current X markup and are expected to drift; nothing
outside this module depends on them.
"""

import re
import json
import time
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlencode, urljoin

from selenium.webdriver.common.by import By
from selenium.common.exceptions import (
    NoSuchElementException,
    StaleElementReferenceException,
    WebDriverException,
)

from xscraper.browser import BASE_URL
from xscraper.engine import PageExtractor, ScrollDriver, TransientExtractionError
from xscraper.models import Record

logger = logging.getLogger(__name__)

SEARCH_TABS = {
    'latest': 'live',
    'top': 'top',
    'media': 'media',
}
PROFILE_TABS = {
    'posts': '',
    'with_replies': 'with_replies',
    'media': 'media',
}

STATUS_HREF_RE = re.compile(r"/([^/?#]+)/status/(\d+)")
COUNT_RE = re.compile(r"^\d+(?:[,.]\d+)?(?:\s*[KkMmBb])?$")

# Messages Chrome uses when the document a handle belonged to has gone away.
DETACHED_MARKERS = ('detached', 'execution context was destroyed', 'no such execution context')

ENGAGEMENT_TESTIDS = {
    'replies': 'reply',
    'retweets': 'retweet',
    'likes': 'like',
}


def build_search_query(query: Optional[str] = None, user: Optional[str] = None, since: Optional[str] = None,
                       until: Optional[str] = None, lang: Optional[str] = None) -> str:
    parts = []
    if lang:
        parts.append(f"lang:{lang}")
    if user:
        parts.append(f"from:{user.lstrip('@')}")
    if query:
        parts.append(query)
    if since:
        parts.append(f"since:{since}")
    if until:
        parts.append(f"until:{until}")
    return ' '.join(parts)


def build_search_url(query: Optional[str] = None, user: Optional[str] = None, since: Optional[str] = None,
                     until: Optional[str] = None, lang: Optional[str] = None, tab: str = 'latest') -> str:
    if tab not in SEARCH_TABS:
        raise ValueError(f"Unknown search tab '{tab}', expected one of {sorted(SEARCH_TABS)}")
    params = {
        'q': build_search_query(query=query, user=user, since=since, until=until, lang=lang),
        'src': 'typed_query',
        'f': SEARCH_TABS[tab],
    }
    return f"{BASE_URL}/search?{urlencode(params)}"


def build_profile_url(handle: str, tab: str = 'posts') -> str:
    if tab not in PROFILE_TABS:
        raise ValueError(f"Unknown profile tab '{tab}', expected one of {sorted(PROFILE_TABS)}")
    url = f"{BASE_URL}/{handle.lstrip('@')}"
    return f"{url}/{PROFILE_TABS[tab]}" if PROFILE_TABS[tab] else url


def parse_status_href(href: Optional[str]) -> Tuple[str, str]:
    """'/nasa/status/123?s=20' -> ('123', 'nasa'). Empty strings when it is not a status link."""
    match = STATUS_HREF_RE.search(href or "")
    if not match:
        return "", ""
    return match.group(2), match.group(1)


def _is_detached(error: WebDriverException) -> bool:
    message = (error.msg or str(error)).lower()
    return any(marker in message for marker in DETACHED_MARKERS)


# ===============================================
# ||              SCROLL DRIVER                ||
# ===============================================
class SeleniumScrollDriver(ScrollDriver):
    def __init__(self, driver):
        self.driver = driver

    def advance(self):
        self.driver.execute_script("window.scrollBy(0, window.innerHeight);")

    def current_height(self) -> int:
        return int(self.driver.execute_script("return document.body.scrollHeight;") or 0)


# ===============================================
# ||              POST EXTRACTOR               ||
# ===============================================
class PostExtractor(PageExtractor):
    """Reads every post article currently in the DOM."""
    ITEM_SELECTOR = "article"

    def __init__(self, driver):
        self.driver = driver

    def extract(self) -> List[Record]:
        try:
            articles = self.driver.find_elements(By.CSS_SELECTOR, self.ITEM_SELECTOR)
            return [self._extract_post(article) for article in articles]
        except StaleElementReferenceException as e:
            raise TransientExtractionError(f"stale element: {e.msg}") from e
        except WebDriverException as e:
            if _is_detached(e):
                raise TransientExtractionError(e.msg or str(e)) from e
            raise

    def _text(self, element, selector: str) -> str:
        try:
            return (element.find_element(By.CSS_SELECTOR, selector).text or "").strip()
        except NoSuchElementException:
            return ""

    def _extract_post(self, article) -> Record:
        record = Record()

        for link in article.find_elements(By.CSS_SELECTOR, "a[href*='/status/']"):
            href = link.get_attribute('href')
            post_id, handle = parse_status_href(href)
            if post_id:
                record.id = post_id
                record.author_handle = handle
                record.permalink = urljoin(BASE_URL, f"/{handle}/status/{post_id}")
                break

        record.body = self._text(article, "div[data-testid='tweetText']") or self._text(article, "div[lang]")

        user_name = self._text(article, "div[data-testid='User-Name']")
        if user_name:
            lines = [line.strip() for line in user_name.split('\n') if line.strip()]
            record.author_display_name = lines[0] if lines else ""
            if not record.author_handle:
                handle = next((line for line in lines if line.startswith('@')), "")
                record.author_handle = handle.lstrip('@')

        try:
            record.created_at = article.find_element(By.CSS_SELECTOR, "time").get_attribute('datetime') or ""
        except NoSuchElementException:
            record.created_at = ""

        record.media = self._extract_media(article)
        record.engagement = self._extract_engagement(article)
        return record

    def _extract_media(self, article) -> List[str]:
        media = []
        for img in article.find_elements(By.CSS_SELECTOR, "img[src*='twimg.com/media']"):
            src = img.get_attribute('src') or ""
            if src and 'profile_images' not in src and 'emoji' not in src and src not in media:
                media.append(src)
        for video in article.find_elements(By.CSS_SELECTOR, "video"):
            poster = video.get_attribute('poster')
            if poster and poster not in media:
                media.append(poster)
        return media

    def _extract_engagement(self, article) -> Dict[str, str]:
        def get_metric(testid):
            text = self._text(article, f"button[data-testid='{testid}'], div[data-testid='{testid}']")
            return text if COUNT_RE.match(text) else "0"

        engagement = {name: get_metric(testid) for name, testid in ENGAGEMENT_TESTIDS.items()}
        views = self._text(article, "a[href$='/analytics']")
        engagement['views'] = views if COUNT_RE.match(views) else "0"
        return engagement


# ===============================================
# ||            PROFILE HEADER                 ||
# ===============================================
def extract_profile(driver) -> Tuple[Dict[str, Optional[str]], Dict[str, str]]:
    """Header fields and follower stats of the profile page currently loaded."""
    def text(selector: str) -> Optional[str]:
        try:
            value = driver.find_element(By.CSS_SELECTOR, selector).text.strip()
            return value or None
        except NoSuchElementException:
            return None

    def attribute(selector: str, name: str) -> Optional[str]:
        try:
            return driver.find_element(By.CSS_SELECTOR, selector).get_attribute(name)
        except NoSuchElementException:
            return None

    profile: Dict[str, Optional[str]] = {}
    user_name = text("div[data-testid='UserName']") or ""
    lines = [line.strip() for line in user_name.split('\n') if line.strip()]
    profile['name'] = lines[0] if lines else None
    handle = next((line for line in lines if line.startswith('@')), None)
    profile['username'] = handle.lstrip('@') if handle else None
    profile['bio'] = text("div[data-testid='UserDescription']")
    profile['location'] = text("span[data-testid='UserLocation']")
    profile['website'] = text("a[data-testid='UserUrl']")
    profile['join_date'] = text("span[data-testid='UserJoinDate']")
    profile['birth_date'] = text("span[data-testid='UserBirthdate']")

    profile_image = attribute("a[href$='/photo'] img", 'src')
    if profile_image:
        profile_image = re.sub(r"_(normal|bigger|x_small|200x200|400x400)\.", ".", profile_image)
    profile['profile_image'] = profile_image
    profile['header_image'] = attribute("a[href$='/header_photo'] img", 'src')

    stats = {'following': '0', 'followers': '0'}
    for key, selector in (('following', "a[href$='/following']"), ('followers', "a[href$='/followers'], a[href$='/verified_followers']")):
        value = text(selector)
        if value:
            match = re.match(r"(\d+(?:[,.]\d+)?(?:\s*[KkMmBb])?)", value)
            if match:
                stats[key] = match.group(1).strip()
    return profile, stats


DIAGNOSTIC_SELECTORS = (
    "article",
    "div[data-testid='tweetText']",
    "div[data-testid='User-Name']",
    "a[href*='/status/']",
    "div[data-testid='primaryColumn']",
)


def save_debug_snapshot(driver, directory, label: str) -> List[Path]:
    """
    Saves a screenshot, the page HTML and a count of what each post selector
    matches, so a failed run can be diagnosed after the browser is gone.
    Returns the files written. A snapshot that cannot be taken is only logged.
    """
    folder = Path(directory)
    stamp = int(time.time() * 1000)
    written: List[Path] = []
    try:
        folder.mkdir(parents=True, exist_ok=True)

        screenshot = folder / f"{label}-{stamp}.png"
        if driver.save_screenshot(str(screenshot)):
            written.append(screenshot)

        html = folder / f"{label}-{stamp}.html"
        html.write_text(driver.page_source or "", encoding='utf-8')
        written.append(html)

        report = {selector: len(driver.find_elements(By.CSS_SELECTOR, selector)) for selector in DIAGNOSTIC_SELECTORS}
        selectors = folder / f"{label}-{stamp}.selectors.json"
        selectors.write_text(json.dumps(report, indent=2), encoding='utf-8')
        written.append(selectors)
    except (WebDriverException, OSError) as e:
        logger.warning(f"Could not save debug snapshot to {folder}: {e}")
    if written:
        logger.info(f"Saved debug snapshot: {', '.join(str(path) for path in written)}")
    return written
