"""Selector synthesis — build one CSS selector that identifies an element.

Runs over a BeautifulSoup document (an HTML snapshot of the page).  The
selector is deterministic for a given DOM state and prefers shorter, more
durable forms.  Priority, first match wins:

1. ``#id``
2. ``[data-testid="..."]``, else the first ``data-*`` attribute by name
3. ``tag.class1.class2`` with volatile state classes dropped, only when it
   matches exactly one element in the document
4. a positional ``tag:nth-of-type(n)`` path of at most five ancestors,
   anchored at the nearest ancestor with an id or stopping at ``<body>``

Selectors are only checked for uniqueness at authoring time.  A selector that
stops resolving later is the Locator's problem, not ours.
"""

from __future__ import annotations

import logging
import re
from typing import Any

import soupsieve
from bs4 import BeautifulSoup, Tag

from autosetup.models import MAX_SELECTOR_ANCESTORS, SCAN_LIMIT

logger = logging.getLogger("autosetup.engine.selector")

_VOLATILE_CLASS_RE = re.compile(r"hover|active|focus|disabled|selected", re.I)

# Elements a scan reports as "interactive"
INTERACTIVE_SELECTOR = 'button, a, input, select, textarea, [role="button"], [onclick], [data-action]'


def css_escape(ident: str) -> str:
    """Escape an identifier for use in a CSS selector."""
    return soupsieve.escape(ident)


def _root_of(element: Tag) -> Tag:
    node = element
    while node.parent is not None:
        node = node.parent
    return node


def _classes(element: Tag) -> list[str]:
    raw = element.get("class") or []
    if isinstance(raw, str):
        raw = raw.split()
    return [c for c in raw if c and not _VOLATILE_CLASS_RE.search(c)]


def _attr_str(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return " ".join(value)
    return "" if value is None else str(value)


def _data_attribute_selector(element: Tag) -> str | None:
    test_id = _attr_str(element.get("data-testid"))
    if test_id:
        return f'[data-testid="{css_escape(test_id)}"]'
    data_attrs = sorted(
        (name, _attr_str(value))
        for name, value in element.attrs.items()
        if name.startswith("data-") and _attr_str(value)
    )
    if data_attrs:
        name, value = data_attrs[0]
        return f'[{name}="{css_escape(value)}"]'
    return None


def _unique_class_selector(element: Tag, document: Tag) -> str | None:
    classes = _classes(element)
    if not classes:
        return None
    selector = element.name + "".join(f".{css_escape(c)}" for c in classes)
    try:
        matches = soupsieve.select(selector, document)
    except soupsieve.SelectorSyntaxError:
        logger.debug("Class selector did not parse: %s", selector)
        return None
    if len(matches) == 1 and matches[0] is element:
        return selector
    return None


def _positional_path(element: Tag) -> str:
    path: list[str] = []
    current: Tag | None = element
    depth = 0
    while current is not None and current.name not in ("body", "html", "[document]"):
        if depth > MAX_SELECTOR_ANCESTORS:
            break
        el_id = _attr_str(current.get("id"))
        if el_id and current is not element:
            path.insert(0, f"#{css_escape(el_id)}")
            break
        segment = current.name
        parent = current.parent
        if parent is not None:
            same_tag = parent.find_all(current.name, recursive=False)
            if len(same_tag) > 1:
                index = next(i for i, sib in enumerate(same_tag, start=1) if sib is current)
                segment += f":nth-of-type({index})"
        path.insert(0, segment)
        current = parent
        depth += 1
    return " > ".join(path) if path else element.name


def synthesize(element: Tag, document: Tag | None = None) -> str:
    """Return a CSS selector string intended to uniquely identify ``element``.

    Args:
        element: The element to identify.
        document: The document to check class-selector uniqueness against.
            Defaults to the root of ``element``'s tree.
    """
    if element.name in ("body", "html"):
        return element.name

    el_id = _attr_str(element.get("id"))
    if el_id:
        return f"#{css_escape(el_id)}"

    data_selector = _data_attribute_selector(element)
    if data_selector:
        return data_selector

    class_selector = _unique_class_selector(element, document or _root_of(element))
    if class_selector:
        return class_selector

    return _positional_path(element)


def element_label(element: Tag) -> str:
    """Human-readable label for a captured element."""
    for attr in ("aria-label", "title", "alt", "placeholder"):
        value = _attr_str(element.get(attr)).strip()
        if value:
            return value
    text = element.get_text(" ", strip=True)[:50]
    return text or element.name


def rect_from_attrs(element: Tag) -> dict[str, float]:
    # Snapshots taken through PlaywrightPage.snapshot() carry the live layout
    # in a data-autosetup-rect="top,left,width,height" attribute.
    raw = _attr_str(element.get("data-autosetup-rect"))
    parts = raw.split(",") if raw else []
    try:
        top, left, width, height = (float(p) for p in parts)
    except ValueError:
        top = left = width = height = 0.0
    return {"top": top, "left": left, "width": width, "height": height}


def describe_element(element: Tag, document: Tag | None = None) -> dict[str, Any]:
    """Build the ``{selector, label, tagName, rect}`` capture payload."""
    return {
        "selector": synthesize(element, document),
        "label": element_label(element),
        "tagName": element.name,
        "rect": rect_from_attrs(element),
    }


def _is_hidden(element: Tag) -> bool:
    if element.has_attr("hidden") or _attr_str(element.get("type")).lower() == "hidden":
        return True
    style = _attr_str(element.get("style")).replace(" ", "").lower()
    return "display:none" in style or "visibility:hidden" in style


def scan_interactive(document: BeautifulSoup | Tag, limit: int = SCAN_LIMIT) -> list[dict[str, Any]]:
    """Describe up to ``limit`` visible interactive elements of a document."""
    described: list[dict[str, Any]] = []
    for element in soupsieve.select(INTERACTIVE_SELECTOR, document):
        if _is_hidden(element):
            continue
        described.append(describe_element(element, document))
        if len(described) >= limit:
            break
    return described
