import logging
import os
from typing import List, Optional, Pattern, Tuple
from urllib.parse import urlsplit

from selenium import webdriver
from selenium.common.exceptions import (
    ElementNotInteractableException,
    StaleElementReferenceException,
    TimeoutException,
    WebDriverException,
)
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.chrome.service import Service
from selenium.webdriver.common.by import By
from selenium.webdriver.support.ui import WebDriverWait
from webdriver_manager.chrome import ChromeDriverManager

from slot_signals import RawControl

Selector = Tuple[str, str]

# Collects every slot-like control, folded onto its nearest interactive
# ancestor, together with the attributes the scanner needs.
SNAPSHOT_SCRIPT = """
const selectors = arguments[0];
const INTERACTIVE = 'button, a[href], input, select, [role="button"], [role="option"], [role="radio"], [role="tab"]';
const tables = Array.from(document.querySelectorAll('table'));
const attrsOf = (node) => {
  const out = {};
  for (const attr of Array.from(node.attributes || [])) out[attr.name] = attr.value;
  return out;
};
const seen = new Set();
const records = [];
for (const selector of selectors) {
  let matches = [];
  try { matches = Array.from(document.querySelectorAll(selector)); } catch (e) { continue; }
  for (const match of matches) {
    const el = match.closest(INTERACTIVE) || match;
    if (seen.has(el)) continue;
    seen.add(el);
    const ancestors = [];
    let node = el.parentElement;
    while (node && node !== document.documentElement && ancestors.length < 25) {
      ancestors.push({
        tag: node.tagName.toLowerCase(),
        attrs: attrsOf(node),
        tableIndex: node.tagName === 'TABLE' ? tables.indexOf(node) : null,
      });
      node = node.parentElement;
    }
    records.push({
      element: el,
      nodeId: String(records.length),
      tag: el.tagName.toLowerCase(),
      text: (el.innerText || el.textContent || ''),
      attrs: attrsOf(el),
      html: (el.outerHTML || '').slice(0, 4000),
      imageAlts: Array.from(el.querySelectorAll('img[alt]')).map((img) => img.getAttribute('alt') || ''),
      ancestors: ancestors,
    });
  }
}
return records;
"""

POINTER_SEQUENCE_SCRIPT = """
const el = arguments[0];
el.focus && el.focus();
const opts = { bubbles: true, cancelable: true, view: window };
const pointer = (type) => (window.PointerEvent ? new PointerEvent(type, opts) : new MouseEvent(type, opts));
el.dispatchEvent(pointer('pointerdown'));
el.dispatchEvent(new MouseEvent('mousedown', opts));
el.dispatchEvent(pointer('pointerup'));
el.dispatchEvent(new MouseEvent('mouseup', opts));
el.dispatchEvent(new MouseEvent('click', opts));
"""


def build_chrome_options(*, headless: bool, profile_dir: Optional[str] = None) -> Options:
    options = Options()
    if headless:
        options.add_argument("--headless=new")

    options.add_argument("--no-sandbox")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument("--disable-blink-features=AutomationControlled")
    options.add_argument("--window-size=1280,1000")
    options.add_argument("--log-level=3")
    options.add_argument("--disable-background-timer-throttling")
    options.add_argument("--disable-renderer-backgrounding")
    options.add_argument("--disable-backgrounding-occluded-windows")

    if profile_dir:
        options.add_argument(f"--user-data-dir={os.path.expanduser(profile_dir)}")

    prefs = {
        "profile.default_content_setting_values": {
            "popups": 2,
            "geolocation": 2,
            "notifications": 2,
            "media_stream": 2,
        }
    }
    options.add_experimental_option("prefs", prefs)

    user_agent = os.getenv("ADVANCER_USER_AGENT")
    if user_agent:
        options.add_argument(f"--user-agent={user_agent}")
    options.add_experimental_option("excludeSwitches", ["enable-automation"])
    options.add_experimental_option("useAutomationExtension", False)
    return options


def open_browser(*, headless: bool, profile_dir: Optional[str] = None) -> webdriver.Chrome:
    os.environ.setdefault("WDM_LOG_LEVEL", "0")
    service = Service(ChromeDriverManager().install())
    try:
        driver = webdriver.Chrome(service=service, options=build_chrome_options(headless=headless, profile_dir=profile_dir))
    except WebDriverException as exc:
        logging.error("Failed to start Chrome driver: %s", exc)
        raise

    driver.set_page_load_timeout(90)
    driver.implicitly_wait(0)
    try:
        driver.execute_cdp_cmd(
            "Page.addScriptToEvaluateOnNewDocument",
            {"source": "Object.defineProperty(navigator, 'webdriver', {get: () => undefined});"},
        )
    except Exception:  # noqa: BLE001
        logging.debug("Unable to tweak navigator.webdriver; continuing anyway.")

    logging.info(
        "Chrome session started: browser=%s (headless=%s)",
        driver.capabilities.get("browserVersion", "unknown"),
        headless,
    )
    return driver


class SeleniumPage:
    """Reservation page driven through a Selenium Chrome session."""

    SLOT_CONTROL_SELECTORS: List[Selector] = [
        (By.CSS_SELECTOR, 'div[role="button"][class*="style_main__button__"]'),
        (By.CSS_SELECTOR, 'div[role="button"][aria-pressed]'),
        (By.CSS_SELECTOR, "button[aria-pressed]"),
        (By.CSS_SELECTOR, "[data-time]"),
        (By.CSS_SELECTOR, '[role="option"], [role="radio"]'),
        (By.CSS_SELECTOR, 'button, [role="button"]'),
    ]

    BUTTON_SELECTORS: List[Selector] = [
        (By.CSS_SELECTOR, 'button, [role="button"]'),
    ]

    CONFIRM_SELECTORS: List[Selector] = [
        (By.CSS_SELECTOR, '[role="dialog"] button[data-testid*="confirm"]'),
        (By.CSS_SELECTOR, '[aria-modal="true"] button[class*="type2"]'),
        (By.CSS_SELECTOR, ".ReactModal__Content button[class*='basic-btn'][class*='type2']"),
    ]

    def __init__(self, driver: webdriver.Chrome) -> None:
        self.driver = driver

    @property
    def origin(self) -> str:
        parts = urlsplit(self.driver.current_url)
        return f"{parts.scheme}://{parts.netloc}"

    def open(self, url: str) -> None:
        self.driver.get(url)
        self._wait_for_page_ready()

    def _wait_for_page_ready(self, timeout: int = 30) -> None:
        try:
            WebDriverWait(self.driver, timeout).until(
                lambda d: d.execute_script("return document.readyState") == "complete"
            )
        except TimeoutException:
            logging.warning("Page did not finish loading within %ss", timeout)

    def snapshot_controls(self) -> List[RawControl]:
        css = [value for by, value in self.SLOT_CONTROL_SELECTORS if by == By.CSS_SELECTOR]
        records = self.driver.execute_script(SNAPSHOT_SCRIPT, css) or []
        controls = []
        for record in records:
            handle = record.pop("element", None)
            controls.append(RawControl.from_snapshot(record, handle))
        return controls

    def activate(self, element) -> None:
        try:
            element.click()
        except (WebDriverException, ElementNotInteractableException):
            self.driver.execute_script("arguments[0].click();", element)

    def activate_with_events(self, element) -> None:
        self.driver.execute_script(POINTER_SEQUENCE_SCRIPT, element)

    def _first_visible(self, selectors: List[Selector], pattern: Optional[Pattern[str]] = None, *, enabled: bool = False):
        for by, value in selectors:
            for element in self.driver.find_elements(by, value):
                try:
                    if pattern is not None and not pattern.search((element.text or "").strip()):
                        continue
                    if not element.is_displayed():
                        continue
                    if enabled and (
                        not element.is_enabled()
                        or (element.get_attribute("aria-disabled") or "false").lower() == "true"
                    ):
                        continue
                    return element
                except StaleElementReferenceException:
                    continue
        return None

    def find_button_by_text(self, pattern: Pattern[str]):
        return self._first_visible(self.BUTTON_SELECTORS, pattern, enabled=True)

    def find_confirm_button(self, pattern: Pattern[str]):
        return self._first_visible(self.CONFIRM_SELECTORS) or self._first_visible(self.BUTTON_SELECTORS, pattern)

    def body_text(self) -> str:
        return self.driver.execute_script("return document.body ? document.body.innerText : '';") or ""

    def reload(self) -> None:
        self.driver.refresh()
        self._wait_for_page_ready()

    def close(self) -> None:
        try:
            self.driver.quit()
        except Exception:  # noqa: BLE001
            logging.debug("Driver quit raised; ignoring to continue cleanup.")
