"""Markup extraction helpers.

Pages are parsed once per scan with BeautifulSoup; forms, inputs, resources,
title and meta tags are read from the parsed tree. Rule patterns that are
defined over the raw source stay regex-based in their own modules.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag
from soupsieve import SelectorSyntaxError

PASSWORD_TYPE_RE = re.compile(r"^\s*password\s*$", re.IGNORECASE)
CREDENTIAL_TYPES = frozenset({"password", "email"})
URL_ATTRIBUTES = ("src", "href", "action")
NON_VISIBLE_TAGS = ("script", "style", "noscript", "template")
WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class FormInfo:
    """A form found in the page."""

    action: Optional[str]
    method: str
    has_password: bool

    def resolved_action(self, page_url: str) -> str:
        """Submission target as the browser would compute it."""
        if not self.action:
            return page_url or ""
        if not page_url:
            return self.action
        return urljoin(page_url, self.action)


def parse_html(source: str) -> BeautifulSoup:
    return BeautifulSoup(source or "", "html.parser")


def _attr(tag: Tag, name: str) -> str:
    """Attribute value as a string; multi-valued attributes are space-joined."""
    value = tag.get(name)
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return " ".join(value)
    return str(value)


def _is_credential_input(tag: Tag) -> bool:
    if tag.name != "input":
        return False
    if _attr(tag, "type").strip().lower() in CREDENTIAL_TYPES:
        return True
    return "pass" in _attr(tag, "name").lower()


def extract_forms(document: BeautifulSoup) -> list[FormInfo]:
    forms: list[FormInfo] = []
    for form in document.find_all("form"):
        action = _attr(form, "action").strip()
        forms.append(
            FormInfo(
                action=action or None,
                method=_attr(form, "method").strip().lower() or "get",
                has_password=form.find("input", attrs={"type": PASSWORD_TYPE_RE}) is not None,
            )
        )
    return forms


def extract_form_actions(document: BeautifulSoup) -> list[str]:
    """Explicit form actions only (forms without an action attribute are ignored)."""
    return [_attr(form, "action") for form in document.find_all("form", action=True)]


def extract_linked_resources(document: BeautifulSoup) -> list[str]:
    """URLs referenced by <link> and <script> tags."""
    urls = []
    for tag in document.find_all(["link", "script"]):
        url = _attr(tag, "href") or _attr(tag, "src")
        if url:
            urls.append(url)
    return urls


def extract_network_resources(document: BeautifulSoup) -> list[str]:
    """URLs of any element with ``src`` plus linked stylesheets, in page order."""
    urls = []
    for tag in document.find_all(True):
        src = _attr(tag, "src")
        if src:
            urls.append(src)
        elif tag.name == "link" and "stylesheet" in _attr(tag, "rel").lower().split():
            href = _attr(tag, "href")
            if href:
                urls.append(href)
    return urls


def extract_attribute_urls(document: BeautifulSoup, attributes: Iterable[str] = URL_ATTRIBUTES) -> list[str]:
    """Non-empty values of URL-bearing attributes, in page order."""
    attributes = tuple(attributes)
    urls = []
    for tag in document.find_all(True):
        for name in attributes:
            value = _attr(tag, name)
            if value:
                urls.append(value)
    return urls


def extract_title(document: BeautifulSoup) -> str:
    title = document.find("title")
    if title is None:
        return ""
    return WHITESPACE_RE.sub(" ", title.get_text()).strip()


def extract_meta_tags(document: BeautifulSoup) -> list[dict[str, str]]:
    return [
        {name.lower(): _attr(tag, name) for name in tag.attrs}
        for tag in document.find_all("meta")
    ]


def has_password_field(document: BeautifulSoup) -> bool:
    return document.find("input", attrs={"type": PASSWORD_TYPE_RE}) is not None


def has_credential_fields(document: BeautifulSoup) -> bool:
    """Password or email inputs (or inputs named like a password)."""
    return document.find(_is_credential_input) is not None


def selector_matches(document: BeautifulSoup, selector: str) -> bool:
    """True if any element matches the CSS ``selector``."""
    try:
        return document.select_one(selector) is not None
    except SelectorSyntaxError as exc:
        raise ValueError(f"unsupported selector: {selector!r}") from exc


def strip_html_to_text(source: str) -> str:
    """Approximate the visible text of a page."""
    document = parse_html(source)
    for tag in document.find_all(NON_VISIBLE_TAGS):
        tag.decompose()
    return WHITESPACE_RE.sub(" ", document.get_text(" ")).strip()
