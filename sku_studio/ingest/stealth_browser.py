"""Stealth settings for Playwright pages.

Hides the WebDriver property, fakes plugins/languages and rotates realistic
desktop user agents so retailer pages render as they would for a shopper.
"""

import logging
import random
from typing import Any, Dict, Optional

from playwright.async_api import BrowserContext

logger = logging.getLogger(__name__)

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
]

DESKTOP_VIEWPORT = {"width": 1920, "height": 1080}

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--disable-gpu",
    "--window-size=1920,1080",
    "--disable-blink-features=AutomationControlled",
    "--disable-features=IsolateOrigins,site-per-process",
    "--disable-infobars",
]

STEALTH_SCRIPTS = [
    # Hide webdriver property
    """
    Object.defineProperty(navigator, 'webdriver', {
        get: () => false
    });
    """,

    # Override permissions
    """
    const originalQuery = window.navigator.permissions.query;
    window.navigator.permissions.query = (parameters) => (
        parameters.name === 'notifications' ?
            Promise.resolve({ state: Notification.permission }) :
            originalQuery(parameters)
    );
    """,

    # Mock plugins
    """
    Object.defineProperty(navigator, 'plugins', {
        get: () => [1, 2, 3, 4, 5]
    });
    """,

    # Mock languages
    """
    Object.defineProperty(navigator, 'languages', {
        get: () => ['en-US', 'en']
    });
    """,

    # Chrome runtime
    """
    window.chrome = {
        runtime: {}
    };
    """,
]


def random_user_agent() -> str:
    return random.choice(USER_AGENTS)


def get_stealth_context_options(user_agent: Optional[str] = None) -> Dict[str, Any]:
    """
    Playwright context options for an isolated shopper-like tab.

    Args:
        user_agent: Optional user agent (random if None)

    Returns:
        Dict of context options
    """
    return {
        "viewport": dict(DESKTOP_VIEWPORT),
        "locale": "en-US",
        "user_agent": user_agent or random_user_agent(),
        "ignore_https_errors": True,
        "bypass_csp": True,
        "extra_http_headers": {"Accept-Language": "en-US,en;q=0.9"},
    }


async def apply_stealth(context: BrowserContext) -> None:
    """Register the stealth init scripts on every page of ``context``."""
    for script in STEALTH_SCRIPTS:
        await context.add_init_script(script)
    logger.debug("Stealth scripts registered on context")
