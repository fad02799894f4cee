import json
import time
import random
import logging
from pathlib import Path
from typing import Optional

from selenium import webdriver
from selenium.webdriver.chrome.service import Service
from selenium.webdriver.common.by import By
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.common.keys import Keys
from selenium.webdriver.support.ui import WebDriverWait
from selenium.webdriver.support import expected_conditions as EC
from selenium.common.exceptions import TimeoutException, NoSuchElementException

from webdriver_manager.chrome import ChromeDriverManager

from xscraper.config import HEADLESS, TIMEOUT, COOKIES_FILE

logger = logging.getLogger(__name__)

BASE_URL = "https://x.com"
USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
POST_SELECTOR = "article"


# ===============================================
# ||            BROWSER SESSION CLASS          ||
# ===============================================
class BrowserSession:
    """Owns the Chrome driver and the logged-in session cookies."""
    def __init__(self, headless: bool = HEADLESS, timeout: int = TIMEOUT, cookies_file: str = COOKIES_FILE):
        self.driver = None
        self.wait = None
        self.timeout = timeout
        self.cookies_file = Path(cookies_file)
        self.setup_driver(headless)

    def setup_driver(self, headless: bool):
        """
        Sets up the Selenium Chrome driver with options that keep the automation flags hidden.
        """
        logger.info("Setting up Chrome driver...")
        options = Options()
        options.add_argument("--start-maximized")
        options.add_argument("--disable-blink-features=AutomationControlled")
        options.add_argument("--no-sandbox")
        options.add_argument("--disable-dev-shm-usage")
        options.add_argument("--disable-extensions")
        options.add_argument("--lang=en-US")

        if headless:
            options.add_argument("--headless=new")
            options.add_argument("--disable-gpu")
            options.add_argument("--window-size=1920,1080")

        options.add_argument(f"user-agent={USER_AGENT}")
        options.add_experimental_option("excludeSwitches", ["enable-automation"])
        options.add_experimental_option('useAutomationExtension', False)

        try:
            service = Service(ChromeDriverManager().install())
            self.driver = webdriver.Chrome(service=service, options=options)
            self.driver.set_page_load_timeout(60)
            self.wait = WebDriverWait(self.driver, self.timeout)
            self.driver.execute_script("Object.defineProperty(navigator, 'webdriver', {get: () => undefined})")
            logger.info(f"Browser launched in {'headless' if headless else 'visible'} mode")
        except Exception as e:
            logger.error(f"Failed to initialize driver: {e}")
            raise

    def load_cookies(self) -> bool:
        if not self.cookies_file.exists():
            return False
        logger.info(f"Loading cookies from {self.cookies_file}...")
        with open(self.cookies_file, 'r', encoding='utf-8') as f:
            cookies = json.load(f)
        self.driver.get(BASE_URL)
        for cookie in cookies:
            self.driver.add_cookie(cookie)
        logger.info("Loaded cookies, skipping login")
        return True

    def save_cookies(self):
        logger.info(f"Saving cookies to {self.cookies_file}...")
        with open(self.cookies_file, 'w', encoding='utf-8') as f:
            json.dump(self.driver.get_cookies(), f, indent=2)

    def login(self, username: str, password: str, email: Optional[str] = None) -> bool:
        """
        Username, optional email/phone verification prompt, then password.
        Cookies are saved on success so later runs skip this.
        """
        logger.info(f"Starting login for user: {username}")
        try:
            self.driver.get(f"{BASE_URL}/login")

            username_input = self.wait.until(EC.presence_of_element_located(
                (By.CSS_SELECTOR, 'input[name="text"], input[autocomplete="username"]')))
            username_input.send_keys(username)
            username_input.send_keys(Keys.RETURN)
            time.sleep(random.uniform(1.5, 2.5))

            # X sometimes asks for the email or phone number before the password.
            try:
                verification_input = self.driver.find_element(By.NAME, "text")
                if email and verification_input.is_displayed():
                    logger.info("Email/phone verification prompt detected. Entering email.")
                    verification_input.send_keys(email)
                    verification_input.send_keys(Keys.RETURN)
                    time.sleep(random.uniform(1.5, 2.5))
            except NoSuchElementException:
                pass

            password_input = self.wait.until(EC.presence_of_element_located((By.NAME, "password")))
            password_input.send_keys(password)
            password_input.send_keys(Keys.RETURN)

            self.wait.until(EC.any_of(
                EC.presence_of_element_located((By.CSS_SELECTOR, "a[data-testid='AppTabBar_Home_Link']")),
                EC.presence_of_element_located((By.CSS_SELECTOR, "div[data-testid='primaryColumn']"))
            ))
            logger.info("Login successful")
            self.save_cookies()
            return True
        except TimeoutException:
            logger.error("Login failed. A timeout occurred waiting for an element.")
            return False

    def ensure_logged_in(self, username: Optional[str], password: Optional[str], email: Optional[str] = None) -> bool:
        if self.load_cookies():
            return True
        if not (username and password):
            logger.error("No saved cookies and no TWITTER_USERNAME/TWITTER_PASSWORD set.")
            return False
        return self.login(username, password, email)

    def open(self, url: str, wait_selector: str = POST_SELECTOR) -> bool:
        """Navigates to `url`. Returns False when no element matching `wait_selector` shows up."""
        logger.info(f"Navigating to URL: {url}")
        self.driver.get(url)
        try:
            self.wait.until(EC.presence_of_element_located((By.CSS_SELECTOR, wait_selector)))
            return True
        except TimeoutException:
            logger.warning(f"Could not find any '{wait_selector}' elements on the page. Current URL: {self.driver.current_url}")
            return False

    def quit(self):
        """Closes the driver and cleans up resources."""
        if self.driver:
            self.driver.quit()
            self.driver = None
            logger.info("Browser driver closed.")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.quit()
        return False
