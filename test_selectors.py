from bs4 import BeautifulSoup

from agent_hub.dom.selectors import SoupDom, build_selector, is_stable_class, nth_of_type_path

HTML = """
<html><body>
  <div id="header">
    <input id="search" name="q" type="text">
    <input name="zip" type="text">
    <button data-testid="add-to-cart" class="btn primary">Add</button>
  </div>
  <div class="card featured css-1x2y3z"><span>One</span></div>
  <div class="card"><span>Two</span></div>
  <span id="dup">a</span><span id="dup" data-qa="second-dup">b</span>
  <ul>
    <li>first</li>
    <li>second</li>
  </ul>
  <section><p>para one</p><p>para two</p></section>
</body></html>
"""


def _setup():
    soup = BeautifulSoup(HTML, "lxml")
    return soup, SoupDom(soup)


def test_id_wins_when_unique():
    soup, dom = _setup()
    assert build_selector(soup.find("input", id="search"), dom) == "#search"


def test_duplicate_id_falls_through_to_data_attribute():
    soup, dom = _setup()
    el = soup.find("span", attrs={"data-qa": "second-dup"})
    assert build_selector(el, dom) == 'span[data-qa="second-dup"]'


def test_data_testid():
    soup, dom = _setup()
    el = soup.find("button")
    assert build_selector(el, dom) == 'button[data-testid="add-to-cart"]'


def test_name_for_form_controls():
    soup, dom = _setup()
    el = soup.find("input", attrs={"name": "zip"})
    assert build_selector(el, dom) == 'input[name="zip"]'


def test_minimal_unique_class_combo_skips_dynamic_classes():
    soup, dom = _setup()
    el = soup.find("div", class_="featured")
    sel = build_selector(el, dom)
    assert sel == "div.featured"
    assert "css-" not in sel


def test_nth_of_type_fallback_resolves_to_element():
    soup, dom = _setup()
    second_li = soup.find_all("li")[1]
    sel = build_selector(second_li, dom)
    assert "nth-of-type(2)" in sel
    assert soup.select(sel) == [second_li]


def test_path_anchors_on_ancestor_id():
    soup = BeautifulSoup('<div id="main"><p>x</p><p>y</p></div>', "lxml")
    target = soup.find_all("p")[1]
    assert nth_of_type_path(target) == "#main > p:nth-of-type(2)"


def test_every_selector_resolves_to_its_element():
    soup, dom = _setup()
    for el in soup.body.find_all(True):
        sel = build_selector(el, dom)
        assert sel, el
        assert soup.select_one(sel) is el, sel


def test_is_stable_class():
    assert is_stable_class("product-card")
    assert not is_stable_class("css-1x2y3z")
    assert not is_stable_class("item-12345")
    assert not is_stable_class("is-active")
    assert not is_stable_class("1col")
