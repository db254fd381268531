"""Push hub and topic discovery for feeds."""

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_HEADER_HUB = re.compile(r"""<([^>]+)>;\s*rel=["']?hub["']?""", re.IGNORECASE)
_HEADER_SELF = re.compile(r"""<([^>]+)>;\s*rel=["']?self["']?""", re.IGNORECASE)


def _link_patterns(rel: str) -> list[re.Pattern]:
    """Both attribute orders, with and without the atom: prefix."""
    patterns = []
    for tag in ("link", "atom:link"):
        patterns.append(re.compile(
            rf"""<{tag}[^>]*rel=["']{rel}["'][^>]*href=["']([^"']+)["']""",
            re.IGNORECASE,
        ))
        patterns.append(re.compile(
            rf"""<{tag}[^>]*href=["']([^"']+)["'][^>]*rel=["']{rel}["']""",
            re.IGNORECASE,
        ))
    return patterns


_XML_HUB = _link_patterns("hub")
_XML_SELF = _link_patterns("self")


@dataclass
class PushEndpoints:
    """Hub and topic advertised by a feed, either may be missing."""

    hub_url: str | None = None
    topic_url: str | None = None


def _first_match(patterns: list[re.Pattern], text: str) -> str | None:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def find_self_link(xml_text: str) -> str | None:
    """Return the href of the document's rel="self" link element, if any."""
    return _first_match(_XML_SELF, xml_text)


def discover_endpoints(
    feed_url: str, xml_text: str, headers: Mapping[str, str] | None = None
) -> PushEndpoints:
    """Discover the push hub and topic for a fetched feed.

    HTTP `Link` headers take precedence; `<link>`/`<atom:link>` elements in
    the document fill in whatever the headers did not provide. When a hub is
    found without a self link, the feed URL itself is used as the topic.
    """
    endpoints = PushEndpoints()

    link_header = headers.get("link") if headers is not None else None
    if link_header:
        hub = _HEADER_HUB.search(link_header)
        topic = _HEADER_SELF.search(link_header)
        if hub:
            endpoints.hub_url = hub.group(1)
        if topic:
            endpoints.topic_url = topic.group(1)

    if not endpoints.hub_url:
        endpoints.hub_url = _first_match(_XML_HUB, xml_text)
    if not endpoints.topic_url:
        endpoints.topic_url = find_self_link(xml_text)

    if endpoints.hub_url and not endpoints.topic_url:
        endpoints.topic_url = feed_url

    if endpoints.hub_url:
        logger.debug(
            "Feed %s advertises hub %s (topic %s)",
            feed_url, endpoints.hub_url, endpoints.topic_url,
        )
    return endpoints
