"""
Shared fakes: a scripted model gateway, an HTML-backed page that speaks the
subset of the Playwright page API the agent uses, and stub executors.
"""

from io import BytesIO
from typing import Any, Callable, Dict, List, Optional

import pytest
from bs4 import BeautifulSoup
from PIL import Image

from agent_hub.core.errors import ModelGatewayError
from agent_hub.core.registry import WEB_AGENT
from agent_hub.core.types import ExecutionResult, ExecutorDescriptor
from agent_hub.llm.governor import ContentGovernor


# --- Model ---

class FakeGateway:
    """Pops scripted replies (or calls a responder); exceptions in the script are raised."""

    def __init__(self, responses: Optional[List[Any]] = None,
                 responder: Optional[Callable[[str, str, Dict[str, Any]], Any]] = None):
        self.governor = ContentGovernor()
        self.responses = list(responses or [])
        self.responder = responder
        self.calls: List[Dict[str, Any]] = []

    def complete(self, system_prompt, user_prompt, options=None):
        self.calls.append({"system": system_prompt, "user": user_prompt, "options": dict(options or {})})
        if self.responder is not None:
            reply = self.responder(system_prompt, user_prompt, options or {})
        elif self.responses:
            reply = self.responses.pop(0)
        else:
            reply = ModelGatewayError("no scripted response left")
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeReply:
    def __init__(self, content):
        self.content = content


class FakeLLM:
    def __init__(self, factory: "FakeLLMFactory", kwargs: Dict[str, Any]):
        self.factory = factory
        self.kwargs = kwargs

    def invoke(self, messages):
        key = self.kwargs.get("api_key")
        self.factory.invoked_keys.append(key)
        behaviour = self.factory.behaviour.get(key, "ok")
        if isinstance(behaviour, Exception):
            raise behaviour
        return FakeReply(behaviour)


class FakeLLMFactory:
    """Stands in for ChatOpenAI(...); behaviour maps api_key -> reply text or exception."""

    def __init__(self, behaviour: Optional[Dict[str, Any]] = None):
        self.behaviour = behaviour or {}
        self.created: List[Dict[str, Any]] = []
        self.invoked_keys: List[str] = []

    def __call__(self, **kwargs):
        self.created.append(kwargs)
        return FakeLLM(self, kwargs)


class RateLimited(Exception):
    status_code = 429


# --- Browser ---

class FakeLocator:
    def __init__(self, page: "FakePage", selector: str, nth: Optional[int] = None):
        self.page = page
        self.selector = selector
        self.index = nth

    def count(self) -> int:
        return len(self.page.soup.select(self.selector))

    def nth(self, index: int) -> "FakeLocator":
        return FakeLocator(self.page, self.selector, index)

    def wait_for(self, state="visible", timeout=None):
        if self.page.closed:
            raise RuntimeError("Target page, context or browser has been closed")
        if self.count() <= (self.index or 0):
            raise TimeoutError(f"Timeout {timeout}ms exceeded waiting for locator('{self.selector}')")

    def click(self, timeout=None):
        self.page.clicks.append(self.selector)
        route = self.page.click_routes.get(self.selector)
        if route is not None:
            self.page.load(*route)

    def fill(self, text, timeout=None):
        self.page.fills.append((self.selector, text))


class FakePage:
    def __init__(self, html: str, url: str = "https://shop.example.com/", title: Optional[str] = None):
        self.closed = False
        self.clicks: List[str] = []
        self.fills: List[tuple] = []
        self.scrolls = 0
        self.waits: List[int] = []
        self.gotos: List[str] = []
        self.routes: Dict[str, str] = {}
        self.click_routes: Dict[str, tuple] = {}
        self.screenshot_bytes: Optional[bytes] = None
        self.load(html, url, title)

    def load(self, html: str, url: Optional[str] = None, title: Optional[str] = None):
        self.html = html
        self.soup = BeautifulSoup(html, "lxml")
        if url is not None:
            self.url = url
        self._title = title

    def content(self) -> str:
        return self.html

    def title(self) -> str:
        if self._title is not None:
            return self._title
        return self.soup.title.get_text().strip() if self.soup.title else ""

    def evaluate(self, script):
        if "readyState" in script:
            return "complete"
        if "scrollBy" in script:
            self.scrolls += 1
        return None

    def wait_for_timeout(self, ms):
        self.waits.append(ms)

    def goto(self, url, wait_until=None, timeout=None):
        self.gotos.append(url)
        if url in self.routes:
            self.load(self.routes[url], url)
        else:
            self.url = url

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    def inner_text(self, selector="body", timeout=None) -> str:
        return self.soup.get_text(" ")

    def screenshot(self, full_page=False):
        return self.screenshot_bytes


class FakeSession:
    def __init__(self, page: FakePage, fail_goto: Optional[str] = None):
        self.page = page
        self.fail_goto = fail_goto
        self.closed = False
        self.visited: List[str] = []

    def goto(self, url: str) -> None:
        self.visited.append(url)
        if self.fail_goto:
            raise RuntimeError(self.fail_goto)
        self.page.url = url

    def screenshot(self):
        return self.page.screenshot()

    def close(self) -> None:
        self.closed = True


class SessionFactory:
    """Records every session it hands out."""

    def __init__(self, page: FakePage, fail_goto: Optional[str] = None):
        self.page = page
        self.fail_goto = fail_goto
        self.sessions: List[FakeSession] = []

    def __call__(self) -> FakeSession:
        session = FakeSession(self.page, self.fail_goto)
        self.sessions.append(session)
        return session


def gradient_png(reverse: bool = False, size=(9, 8)) -> bytes:
    img = Image.new("L", size)
    width, height = size
    for x in range(width):
        shade = int(255 * x / (width - 1))
        for y in range(height):
            img.putpixel((x, y), 255 - shade if reverse else shade)
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


# --- Executors ---

class ScriptedExecutor:
    """Returns scripted ExecutionResults (or raises scripted exceptions) in order."""

    def __init__(self, results: List[Any], descriptor: ExecutorDescriptor = WEB_AGENT, on_invoke=None):
        self.descriptor = descriptor
        self.results = list(results)
        self.calls: List[Dict[str, Any]] = []
        self.on_invoke = on_invoke

    def invoke(self, params):
        self.calls.append(dict(params))
        if self.on_invoke is not None:
            self.on_invoke(params)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


def named_descriptor(name: str) -> ExecutorDescriptor:
    return ExecutorDescriptor(name=name, description=f"{name} test executor", required_params=("task",))


# --- HTML fixtures ---

def product_card(i: int) -> str:
    reviews = "1,234 ratings" if i == 1 else f"{100 + i * 37} reviews"
    return f"""
    <div class="product-card" data-testid="product-card-{i}">
      <h3 class="product-title"><a href="/dp/B0{i:03d}">Wireless Bluetooth Earbuds Model {i}</a></h3>
      <span class="price">${20 + i}.99</span>
      <span class="rating" aria-label="4.{i % 10} out of 5 stars">4.{i % 10}</span>
      <span class="reviews">{reviews}</span>
    </div>"""


def product_page(count: int = 12) -> str:
    cards = "".join(product_card(i) for i in range(1, count + 1))
    return f"""<html><head><title>earbuds - Example Shop</title></head>
    <body>
      <header>
        <a href="/account/login">Sign in</a>
        <a href="/cart">Cart</a>
        <form action="/search" method="get" role="search">
          <input id="search-box" name="q" type="text" placeholder="Search products">
          <button type="submit">Search</button>
        </form>
      </header>
      <main>
        <h1>Results for earbuds</h1>
        <div id="results">{cards}</div>
        <a href="/search?q=earbuds&page=2">Next page</a>
      </main>
      <footer><a href="/privacy">Privacy</a></footer>
    </body></html>"""


PLAIN_PAGE = """<html><head><title>About us</title></head>
<body>
  <nav><a href="/">Home</a><a href="/contact">Contact</a></nav>
  <main><h1>About</h1><p>We make things. Nothing to list here.</p></main>
</body></html>"""


@pytest.fixture
def product_html():
    return product_page(12)


@pytest.fixture
def plain_html():
    return PLAIN_PAGE
