import json

import pytest

from agent_hub.agents.web_agent import (
    PARTIAL_SUMMARY_FALLBACK,
    WebAgent,
    WebAgentExecutor,
    fallback_action,
    normalize_url,
)
from agent_hub.dom.session import detect_bot_wall
from conftest import PLAIN_PAGE, FakeGateway, FakePage, SessionFactory, gradient_png

SEARCH_HOME = """<html><head><title>Example Shop</title></head><body>
<form action="/s"><input id="search-box" name="q" placeholder="Search"><button>Search</button></form>
</body></html>"""


def decision(kind, target="", value="", completed=False, confidence=0.3, answer=""):
    return json.dumps({
        "action": {"type": kind, "target": target, "value": value, "reasoning": f"{kind} next"},
        "isCompleted": completed,
        "confidence": confidence,
        "finalAnswer": answer,
    })


def _agent(responses, html, url="about:blank", **kwargs):
    page = FakePage(html, url)
    factory = SessionFactory(page)
    gateway = FakeGateway(responses)
    agent = WebAgent(gateway, session_factory=factory, **kwargs)
    return agent, page, factory, gateway


def test_normalize_url():
    assert normalize_url("shop.example.com/s?k=earbuds") == "https://shop.example.com/s?k=earbuds"
    assert normalize_url("http://localhost:3000/") == "http://localhost:3000/"
    for bad in ("", None, "not a valid url", "https://nodot", "ftp://files.example.com"):
        with pytest.raises(ValueError):
            normalize_url(bad)


def test_invalid_url_fails_without_opening_a_browser(product_html):
    agent, _, factory, gateway = _agent([], product_html)
    out = agent.run("not a valid url", "find earbuds")
    assert out["is_completed"] is False
    assert out["error"] is True
    assert out["message"].startswith("WebAgent failed: Invalid URL")
    assert factory.sessions == []
    assert gateway.calls == []


def test_navigation_failure_closes_session(product_html):
    page = FakePage(product_html)
    factory = SessionFactory(page, fail_goto="net::ERR_NAME_NOT_RESOLVED")
    agent = WebAgent(FakeGateway(), session_factory=factory)
    out = agent.run("https://nowhere.example.com", "find earbuds")
    assert out["error"] is True
    assert "ERR_NAME_NOT_RESOLVED" in out["message"]
    assert factory.sessions[0].closed


def test_extraction_completes_the_run(product_html):
    agent, page, factory, _ = _agent([decision("extract")], product_html)
    out = agent.run("shop.example.com/s?k=earbuds", "find wireless earbuds")

    assert out["is_completed"] is True
    assert out["stop_reason"] == "extracted"
    assert out["total_iterations"] == 1
    data = out["result"]["extracted_data"]
    assert data["item_count"] == 12
    assert data["page_url"] == "https://shop.example.com/s?k=earbuds"
    assert factory.sessions[0].visited == ["https://shop.example.com/s?k=earbuds"]
    assert factory.sessions[0].closed


def test_confident_completion_stops_before_acting(product_html):
    agent, page, _, _ = _agent([decision("scroll", completed=True, confidence=0.95, answer="Done")], product_html)
    out = agent.run("https://shop.example.com", "say done")
    assert out["is_completed"] is True
    assert out["result"] == "Done"
    assert out["total_iterations"] == 0
    assert page.scrolls == 0


def test_completion_at_threshold_is_not_enough(product_html):
    responses = [decision("scroll", "body", completed=True, confidence=0.8, answer="maybe"), decision("extract")]
    agent, page, _, _ = _agent(responses, product_html, max_iterations=3)
    out = agent.run("https://shop.example.com", "find earbuds")
    assert page.scrolls == 1
    assert out["stop_reason"] == "extracted"


def test_quoted_false_completion_keeps_going(product_html):
    quoted = json.dumps({"action": {"type": "scroll", "target": "body"}, "isCompleted": "false",
                         "confidence": 0.95, "finalAnswer": "not yet"})
    agent, page, _, _ = _agent([quoted, decision("extract")], product_html, max_iterations=3)
    out = agent.run("https://shop.example.com", "find earbuds")
    assert page.scrolls == 1
    assert out["stop_reason"] == "extracted"


def test_fallback_actions_when_model_is_down(plain_html):
    agent, page, _, _ = _agent([], plain_html, max_iterations=4)
    out = agent.run("https://about.example.com", "find products")

    # scroll, scroll, extract (nothing found), scroll
    assert page.scrolls == 3
    assert out["is_completed"] is False
    assert out["stop_reason"] == "max_iterations"
    assert out["total_iterations"] == 4
    assert out["result"]["summary"] == PARTIAL_SUMMARY_FALLBACK


def test_fallback_action_rules():
    scroll = {"action": {"type": "scroll"}}
    assert fallback_action([scroll, scroll], None, "x")["type"] == "extract"
    loading = {"metrics": {"has_loading_indicator": True}}
    assert fallback_action([scroll], loading, "x") == {
        "type": "wait", "target": "", "value": "2000", "reasoning": "Fallback while the page is loading (x)"}
    assert fallback_action([], None, "x")["type"] == "scroll"


def test_three_unparseable_replies_stop_the_run(plain_html):
    agent, page, _, _ = _agent(["garbage", "still garbage", "nope"], plain_html, max_iterations=10)
    out = agent.run("https://about.example.com", "find products")
    assert out["stop_reason"] == "unparseable_model_output"
    assert out["total_iterations"] == 2
    assert out["is_completed"] is False
    assert out["result"]["summary"] == PARTIAL_SUMMARY_FALLBACK


def test_recovered_decision_from_truncated_json(product_html):
    truncated = '{"action": {"type": "extract", "target": "", "reasoning": "items"}, "isCompleted": false, "confidence": 0.4'
    agent, _, _, _ = _agent([truncated], product_html)
    out = agent.run("https://shop.example.com", "list products")
    assert out["is_completed"] is True
    assert out["result"]["extracted_data"]["item_count"] == 12


def test_final_extraction_pass_rescues_exhausted_budget(product_html):
    agent, _, _, gateway = _agent([decision("scroll", "body"), decision("scroll", "body")],
                                  product_html, max_iterations=2)
    out = agent.run("https://shop.example.com", "find earbuds")
    assert out["is_completed"] is True
    assert out["stop_reason"] == "max_iterations"
    assert out["result"]["extracted_data"]["item_count"] == 12
    assert len(gateway.calls) == 2


def test_failed_click_is_recorded_and_loop_continues(product_html):
    agent, page, _, gateway = _agent([decision("click", "#does-not-exist"), decision("extract")], product_html)
    out = agent.run("https://shop.example.com", "find earbuds")
    assert out["is_completed"] is True
    assert out["total_iterations"] == 2
    second_prompt = gateway.calls[1]["user"]
    assert "#does-not-exist" in second_prompt
    assert "Timeout" in second_prompt


def test_search_flow_navigates_and_extracts(product_html):
    responses = [
        decision("fill", "#search-box", "earbuds"),
        decision("click", "form button"),
        decision("extract", "div.product-card"),
    ]
    agent, page, _, _ = _agent(responses, SEARCH_HOME)
    page.click_routes["form button"] = (product_html, "https://shop.example.com/s?q=earbuds")

    out = agent.run("https://shop.example.com", "search for earbuds")
    assert page.fills == [("#search-box", "earbuds")]
    assert page.clicks == ["#search-box", "form button"]
    assert out["is_completed"] is True
    assert out["result"]["extracted_data"]["page_url"] == "https://shop.example.com/s?q=earbuds"
    assert out["result"]["extracted_data"]["container_selector"] == "div.product-card"


def test_unchanged_screenshot_is_reported_to_model(product_html):
    agent, page, _, gateway = _agent([decision("scroll", "body"), decision("extract")], product_html)
    page.screenshot_bytes = gradient_png(reverse=True)
    agent.run("https://shop.example.com", "find earbuds")
    assert '"pageChanged": false' in gateway.calls[1]["user"]


def test_fatal_browser_error_stops_immediately(product_html):
    agent, page, factory, _ = _agent([decision("click", "#search-box")], product_html, max_iterations=5)
    page.closed = True
    out = agent.run("https://shop.example.com", "find earbuds")
    assert out["stop_reason"] == "fatal_action_error"
    assert out["total_iterations"] == 1
    assert out["is_completed"] is False
    assert factory.sessions[0].closed


def test_executor_maps_outcomes(plain_html, product_html):
    agent, _, _, _ = _agent([], plain_html, max_iterations=1)
    executor = WebAgentExecutor(agent)
    assert executor.descriptor.name == "WebAgent"

    failed = executor.invoke({"url": "not a valid url", "task": "x"})
    assert failed.error and not failed.is_completed
    assert failed.message.startswith("WebAgent failed")

    partial = executor.invoke({"url": "https://about.example.com", "task": "find products"})
    assert partial.partial and not partial.is_completed and not partial.error
    assert partial.message == "Stopped after 1 iterations"

    agent, _, _, _ = _agent([decision("extract")], product_html)
    done = WebAgentExecutor(agent).invoke({"url": "https://shop.example.com", "task": "list", "maxIterations": 3})
    assert done.is_completed and not done.partial
    assert done.result["extracted_data"]["item_count"] == 12


def test_detect_bot_wall():
    assert detect_bot_wall("Robot Check", "")
    assert detect_bot_wall("Amazon", "Enter the characters you see below. Sorry, we just need to make sure you're not a robot.")
    assert not detect_bot_wall("Example Shop", "Results for earbuds")
