from agent_hub.dom.ranker import rank_elements
from agent_hub.dom.scoring import _classify_intent, is_garbage_label, score_element


def test_intent_classification():
    assert _classify_intent("Find wireless earbuds under $50") == "search"
    assert _classify_intent("Sort the laptops by lowest price") == "sort_filter"
    assert _classify_intent("Fill in the newsletter form with my email") == "form_fill"
    assert _classify_intent("Go to the careers section") == "navigate"
    assert _classify_intent("Get the top 5 stories") == "extract_list"
    assert _classify_intent("Hello there") == "generic"
    # word boundaries: "topic" does not mean "top"
    assert _classify_intent("Explain this topic") == "generic"


def test_search_box_beats_account_link():
    task = "Search for wireless earbuds"
    search_box = {"text": "", "placeholder": "Search products", "role": "searchbox", "landmark": "banner",
                  "selector": "#search-box"}
    sign_in = {"text": "Sign in to your account", "role": "link", "landmark": "banner", "selector": "a.login"}
    assert score_element(search_box, task) > score_element(sign_in, task)


def test_destructive_controls_are_penalised():
    task = "Get the prices of all products"
    delete = {"text": "Delete list", "role": "button", "landmark": "main", "selector": "button.del"}
    products = {"text": "All products", "role": "link", "landmark": "main", "selector": "a.products"}
    assert score_element(products, task) > score_element(delete, task)


def test_retry_penalty_is_stronger_when_page_did_not_change():
    elem = {"text": "Submit", "role": "button", "landmark": "main", "selector": "button.submit"}
    task = "Click Submit"

    base = score_element(elem, task, tried_selectors=[], page_unchanged=False)
    tried = score_element(elem, task, tried_selectors=["button.submit"], page_unchanged=False)
    stuck = score_element(elem, task, tried_selectors=["button.submit"], page_unchanged=True)
    assert tried < base
    assert stuck < tried
    assert stuck <= base - 5.0


def test_garbage_labels():
    assert is_garbage_label("x")
    assert is_garbage_label("12345")
    assert not is_garbage_label("Go")
    assert not is_garbage_label("12")
    assert not is_garbage_label("Add to cart")


def test_rank_elements_orders_and_keeps_a_text_field():
    elements = [{"text": f"Category {i}", "role": "link", "landmark": "navigation", "selector": f"a.cat{i}"}
                for i in range(40)]
    elements.append({"text": "", "placeholder": "", "role": "textbox", "landmark": "", "selector": "input.q",
                     "tag": "input"})
    elements.append({"text": "Wireless earbuds", "role": "link", "landmark": "main", "selector": "a.earbuds"})

    ranked = rank_elements(elements, "find wireless earbuds", top_k=5)
    assert ranked[0]["selector"] == "a.earbuds"
    assert "input.q" in [e["selector"] for e in ranked]
    assert [e["index"] for e in ranked] == list(range(len(ranked)))
    assert all("score" in e for e in ranked)
    # inputs are untouched copies
    assert "score" not in elements[-1]
