"""Keyword check that a product page is in the fragrance category.

Numeric identifiers collide across categories (an EAN that is a perfume at one
retailer can be a television at another), so pages are screened before their
images are collected.
"""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

FRAGRANCE_KEYWORDS = (
    "perfume", "cologne", "fragrance", "eau de", "parfum", "toilette",
    "scent", "spray", "ml", "oz", "edp", "edt", "body mist", "aftershave",
    "amouage", "chanel", "dior", "gucci", "versace", "armani", "ysl",
    "tom ford", "creed", "jo malone", "dolce", "gabbana", "burberry",
)

NON_FRAGRANCE_KEYWORDS = (
    "tv", "television", "laptop", "phone", "computer", "electronics",
    "furniture", "clothing", "shoes", "appliance", "kitchen", "home decor",
    "xiaomi", "samsung tv", "lg tv", "sony tv", "smart tv", "4k display",
)

MIN_BODY_KEYWORD_HITS = 2
BODY_TEXT_LIMIT = 5000

# Runs in the page; returns the fields the check needs
PAGE_TEXT_SCRIPT = """
() => {
  const text = (el) => (el && el.textContent ? el.textContent : '').toLowerCase();
  const meta = document.querySelector('meta[name="description"]');
  return {
    title: (document.title || '').toLowerCase(),
    h1: text(document.querySelector('h1')),
    breadcrumb: text(document.querySelector('[class*="breadcrumb"], .breadcrumbs, nav[aria-label*="breadcrumb"]')),
    meta_description: ((meta && meta.getAttribute('content')) || '').toLowerCase(),
    body: ((document.body && document.body.innerText) || '').toLowerCase().slice(0, %d),
  };
}
""" % BODY_TEXT_LIMIT


@dataclass
class PageText:
    title: str = ""
    h1: str = ""
    breadcrumb: str = ""
    meta_description: str = ""
    body: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "PageText":
        return cls(**{
            key: str(data.get(key) or "").lower()
            for key in ("title", "h1", "breadcrumb", "meta_description", "body")
        })


def is_relevant_product(page_text: PageText) -> bool:
    """Decide whether a page describes a fragrance.

    Order of checks:
    1. any non-fragrance keyword in title/h1/breadcrumb rejects
    2. any fragrance keyword in title/h1/breadcrumb/meta description accepts
    3. otherwise at least two distinct fragrance keywords in the body text accept
    """
    headline = f"{page_text.title} {page_text.h1} {page_text.breadcrumb}"

    for keyword in NON_FRAGRANCE_KEYWORDS:
        if keyword in headline:
            logger.debug(f"Non-fragrance keyword found: {keyword!r}")
            return False

    for keyword in FRAGRANCE_KEYWORDS:
        if keyword in headline or keyword in page_text.meta_description:
            return True

    hits = sum(1 for keyword in FRAGRANCE_KEYWORDS if keyword in page_text.body)
    return hits >= MIN_BODY_KEYWORD_HITS


async def check_page_relevance(page) -> bool:
    """Run the relevance check against a live Playwright page.

    Defaults to relevant when the page cannot be read.
    """
    try:
        data = await page.evaluate(PAGE_TEXT_SCRIPT)
    except Exception as e:
        logger.debug(f"Relevance check could not read page: {e}")
        return True
    return is_relevant_product(PageText.from_dict(data or {}))
