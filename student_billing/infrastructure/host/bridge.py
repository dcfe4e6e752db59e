"""
Host Bridge

Interface to the application hosting the dashboard (messaging-app
webview, browser, terminal). The client only needs to open checkout
links; each method reports whether the host handled the request.
"""

import logging
import webbrowser
from typing import Protocol


logger = logging.getLogger(__name__)


class HostBridge(Protocol):
    """Ways of opening an external URL, tried in priority order."""

    def open_native(self, url: str) -> bool:
        """Open with the host app's own link handler."""
        ...

    def redirect(self, url: str) -> bool:
        """Navigate the current page to the URL."""
        ...

    def open_new_tab(self, url: str) -> bool:
        """Open the URL in a new tab or window."""
        ...


class BrowserHostBridge:
    """Host bridge for desktop use. There is no native host, so the browser does the work."""

    def open_native(self, url: str) -> bool:
        return False

    def redirect(self, url: str) -> bool:
        return webbrowser.open(url, new=0)

    def open_new_tab(self, url: str) -> bool:
        return webbrowser.open(url, new=2)


def open_checkout_url(bridge: HostBridge, url: str) -> bool:
    """
    Open a checkout URL with the first host method that succeeds.

    Order: host-native open, full-page redirect, new tab.
    """
    methods = (
        ("open_native", bridge.open_native),
        ("redirect", bridge.redirect),
        ("open_new_tab", bridge.open_new_tab),
    )
    for label, method in methods:
        try:
            if method(url):
                logger.info(f"Opened checkout via {label}")
                return True
        except Exception as e:
            logger.warning(f"Host {label} failed: {e}")
    logger.error(f"Host could not open checkout URL {url}")
    return False
