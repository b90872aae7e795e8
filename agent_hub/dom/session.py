from typing import Optional

from playwright.sync_api import sync_playwright

from ..core import config

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
VIEWPORT = {"width": 1366, "height": 768}
EXTRA_HEADERS = {
    "Accept-Language": "en-US,en;q=0.9",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
}
BOT_WALL_MARKERS = ("robot", "captcha", "unusual traffic", "are you human", "verify you are human")


def detect_bot_wall(title: str, body_text: str) -> bool:
    haystack = f"{title or ''} {(body_text or '')[:5000]}".lower()
    return any(marker in haystack for marker in BOT_WALL_MARKERS)


class BrowserSession:
    """One Chromium context + page, owned by a single web agent run."""

    def __init__(
        self,
        headless: bool = config.BROWSER_HEADLESS,
        navigation_timeout_ms: int = config.NAVIGATION_TIMEOUT_MS,
        settle_ms: int = config.SETTLE_WAIT_MS,
        bot_wall_wait_ms: int = config.BOT_WALL_EXTRA_WAIT_MS,
    ):
        self.headless = headless
        self.navigation_timeout_ms = navigation_timeout_ms
        self.settle_ms = settle_ms
        self.bot_wall_wait_ms = bot_wall_wait_ms
        self._playwright = None
        self.browser = None
        self.context = None
        self.page = None

    def open(self):
        print("[Session] Launching Chromium...")
        self._playwright = sync_playwright().start()
        self.browser = self._playwright.chromium.launch(headless=self.headless)
        self.context = self.browser.new_context(
            viewport=VIEWPORT,
            user_agent=USER_AGENT,
            locale="en-US",
            extra_http_headers=EXTRA_HEADERS,
        )
        self.page = self.context.new_page()
        return self.page

    def goto(self, url: str) -> None:
        if self.page is None:
            self.open()
        print(f"[Session] Navigating to {url}")
        self.page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
        self.page.wait_for_timeout(self.settle_ms)

        body = ""
        try:
            body = self.page.inner_text("body", timeout=5000)
        except Exception as e:
            print(f"[Session] Could not read body text: {e}")
        if detect_bot_wall(self.page.title(), body):
            print(f"[Session] Possible bot check detected; waiting {self.bot_wall_wait_ms}ms")
            self.page.wait_for_timeout(self.bot_wall_wait_ms)

    def screenshot(self) -> Optional[bytes]:
        try:
            return self.page.screenshot(full_page=False)
        except Exception as e:
            print(f"[Session] Screenshot failed: {e}")
            return None

    def close(self) -> None:
        for name in ("context", "browser"):
            resource = getattr(self, name)
            if resource is None:
                continue
            try:
                resource.close()
            except Exception as e:
                print(f"[Session] Failed to close {name}: {e}")
            setattr(self, name, None)
        if self._playwright is not None:
            try:
                self._playwright.stop()
            except Exception as e:
                print(f"[Session] Failed to stop Playwright: {e}")
            self._playwright = None
        self.page = None
        print("[Session] Browser closed")
