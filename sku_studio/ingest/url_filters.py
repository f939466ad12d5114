"""Image URL normalization, CDN size upgrades and the non-product deny-list."""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

logger = logging.getLogger(__name__)

# URLs containing any of these are not product photos
NON_PRODUCT_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"logo", r"icon", r"payment", r"banner", r"sprite", r"thumb", r"placeholder",
        r"loading", r"lazy", r"pixel", r"tracking", r"1x1", r"badge", r"flag",
        r"visa", r"mastercard", r"amex", r"paypal", r"apple-pay", r"google-pay",
        r"tabby", r"tamara", r"klarna", r"afterpay", r"social", r"facebook",
        r"twitter", r"instagram", r"youtube", r"tiktok", r"pinterest", r"linkedin",
        r"whatsapp", r"share", r"rating", r"star", r"review", r"avatar", r"user",
        r"profile", r"cart", r"checkout", r"shipping", r"delivery", r"return",
        r"guarantee", r"trust", r"secure", r"ssl", r"certificate", r"arrow",
        r"chevron", r"close", r"menu", r"hamburger", r"search", r"magnify",
        r"zoom-icon", r"play-button", r"video-icon", r"\.svg$", r"\.gif$",
        r"data:image", r"base64", r"transparent", r"spacer", r"blank", r"empty",
        r"no-image", r"coming-soon", r"out-of-stock", r"_xs\.", r"_sm\.",
        r"_tiny", r"_small", r"w=50", r"w=100", r"h=50", r"h=100", r"size=50", r"size=100",
    )
]

_IMAGE_EXTENSION = re.compile(r"\.(jpg|jpeg|png|webp)(\?|$)", re.IGNORECASE)
_IMAGE_PATH = re.compile(r"/images?/|/products?/|/media/", re.IGNORECASE)
_LEADING_INT = re.compile(r"^\d+")


def normalize_url(url: str) -> str:
    """Make protocol-relative URLs absolute and trim whitespace."""
    url = url.strip()
    if url.startswith("//"):
        return f"https:{url}"
    return url


def is_fetchable(url: str) -> bool:
    return bool(url) and (url.startswith("http") or url.startswith("//"))


def is_product_image_url(url: str) -> bool:
    """Heuristic: looks like an image and matches no deny-list entry."""
    if not url:
        return False
    if not _IMAGE_EXTENSION.search(url) and not _IMAGE_PATH.search(url):
        return False
    return not any(pattern.search(url) for pattern in NON_PRODUCT_PATTERNS)


def widest_srcset_entry(srcset: str) -> str:
    """Pick the candidate with the largest width descriptor from a srcset."""
    best_url, best_width = "", -1
    for entry in srcset.split(","):
        parts = entry.strip().split()
        if not parts:
            continue
        width = 0
        if len(parts) > 1:
            match = _LEADING_INT.match(parts[1])
            width = int(match.group(0)) if match else 0
        if width > best_width:
            best_url, best_width = parts[0], width
    return best_url


# =============================================================================
# CDN upgrades
# =============================================================================


def _strip_query(url: str) -> str:
    return url.split("?", 1)[0]


def _drop_query_params(url: str, names: set[str], numeric_only: bool = False) -> str:
    """Remove the named query parameters, leaving the rest of the query intact."""
    parts = urlsplit(url)
    if not parts.query:
        return url
    kept = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key.lower() not in names or (numeric_only and not value.isdigit())
    ]
    return urlunsplit(parts._replace(query=urlencode(kept)))


def _with_query_params(url: str, **params: str) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True) + list(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


def _cloudinary(url: str) -> str:
    url = re.sub(r"/upload/[^/]+/", "/upload/", url, count=1)
    return url.replace("/upload/", "/upload/q_100,f_png/", 1)


def _shopify(url: str) -> str:
    url = re.sub(r"_\d+x\d*\.", ".", url, count=1)
    url = re.sub(r"_\d*x\d+\.", ".", url, count=1)
    url = re.sub(
        r"_(pico|icon|thumb|small|compact|medium|large|grande|master|original)\.",
        ".", url, flags=re.IGNORECASE,
    )
    return re.sub(r"_crop_[a-z]+\.", ".", url, flags=re.IGNORECASE)


def _scene7(url: str) -> str:
    return _strip_query(url) + "?wid=2000&hei=2000&fmt=png-alpha&qlt=100"


def _akamai(url: str) -> str:
    return _strip_query(url)


def _imgix(url: str) -> str:
    return _strip_query(url) + "?q=100&auto=format"


def _fastly(url: str) -> str:
    url = _drop_query_params(url, {"width", "height", "quality", "fit", "crop"})
    return _with_query_params(url, quality="100")


def _contentful(url: str) -> str:
    return _strip_query(url) + "?q=100&fm=png"


def _sanity(url: str) -> str:
    return _strip_query(url) + "?q=100"


def _woocommerce(url: str) -> str:
    return re.sub(r"-\d+x\d+\.(jpg|jpeg|png|webp)", r".\1", url, count=1, flags=re.IGNORECASE)


def _magento(url: str) -> str:
    if "/cache/" in url and "/image/" in url:
        url = re.sub(r"/cache/\d+/image/\d+x\d+/", "/cache/1/image/", url, flags=re.IGNORECASE)
    if "/resize/" in url:
        url = re.sub(r"/resize/\d+x\d*/", "/", url, flags=re.IGNORECASE)
        url = re.sub(r"/resize/\d*x\d+/", "/", url, flags=re.IGNORECASE)
    return url


def _fragrancex(url: str) -> str:
    return url.replace("/sku/small/", "/parent/medium/")


def _fragrancenet(url: str) -> str:
    return url.replace("_s.", "_l.").replace("_m.", "_l.")


def _sephora(url: str) -> str:
    return re.sub(r"_\d+x\d+_", "_", _strip_query(url))


def _nordstrom(url: str) -> str:
    return _strip_query(url) + "?h=2000&w=2000"


def _macys(url: str) -> str:
    url = _strip_query(url)
    if "scene7" in url:
        url += "?wid=2000&hei=2000&fmt=png-alpha&qlt=100"
    return url


def _neiman(url: str) -> str:
    return _strip_query(url) + "?wid=2000&hei=2000"


def _harrods(url: str) -> str:
    return _strip_query(re.sub(r"/w\d+/", "/w2000/", url))


def _selfridges(url: str) -> str:
    return re.sub(r"_\d+\.", ".", _strip_query(url))


def _net_a_porter(url: str) -> str:
    url = url.replace("_pp.jpg", "_in_pp.jpg")
    return re.sub(r"/w\d+/", "/w2000/", url)


def _cosbar(url: str) -> str:
    return re.sub(r"_\d+x\d+\.", ".", _strip_query(url))


def _jomashop(url: str) -> str:
    return re.sub(r"-\d+x\d+\.", ".", _strip_query(url))


def _eu_beauty(url: str) -> str:
    return _strip_query(re.sub(r"/\d+x\d+/", "/", url))


def _strawberrynet(url: str) -> str:
    url = re.sub(r"_\d+\.", ".", url)
    return url.replace("/thumb/", "/large/")


@dataclass(frozen=True)
class CdnRule:
    """Rewrite applied when ``matches`` accepts the URL."""

    name: str
    matches: Callable[[str], bool]
    rewrite: Callable[[str], str]


def _contains(*markers: str) -> Callable[[str], bool]:
    return lambda url: any(marker in url for marker in markers)


# Applied in order; several can fire on one URL
CDN_RULES: tuple[CdnRule, ...] = (
    CdnRule("cloudinary", _contains("cloudinary.com"), _cloudinary),
    CdnRule("shopify", _contains("cdn.shopify.com", ".myshopify.com"), _shopify),
    CdnRule("scene7", _contains("scene7.com", "/is/image/"), _scene7),
    CdnRule("akamai", _contains("akamaized.net", "akamaiobjects.com"), _akamai),
    CdnRule("imgix", _contains("imgix.net", ".imgix."), _imgix),
    CdnRule("fastly", _contains("fastly.net"), _fastly),
    CdnRule("contentful", _contains("ctfassets.net", "contentful.com"), _contentful),
    CdnRule("sanity", _contains("sanity.io"), _sanity),
    CdnRule(
        "woocommerce",
        lambda url: re.search(r"-\d+x\d+\.(jpg|jpeg|png|webp)", url, re.IGNORECASE) is not None,
        _woocommerce,
    ),
    CdnRule("magento", _contains("/cache/", "/resize/"), _magento),
    CdnRule("fragrancex", _contains("img.fragrancex.com"), _fragrancex),
    CdnRule("fragrancenet", _contains("fragrancenet.com"), _fragrancenet),
    CdnRule("sephora", _contains("sephora."), _sephora),
    CdnRule("nordstrom", _contains("nordstrom.com", "n.nordstrommedia.com"), _nordstrom),
    CdnRule("macys", _contains("bloomingdales.com", "macys.com"), _macys),
    CdnRule("neiman", _contains("neimanmarcus.com", "bergdorfgoodman.com"), _neiman),
    CdnRule("harrods", _contains("harrods.com"), _harrods),
    CdnRule("selfridges", _contains("selfridges.com"), _selfridges),
    CdnRule("net-a-porter", _contains("net-a-porter.com", "mrporter.com"), _net_a_porter),
    CdnRule("cosbar", _contains("cosbar.com"), _cosbar),
    CdnRule("jomashop", _contains("jomashop.com"), _jomashop),
    CdnRule("eu-beauty", _contains("douglas.", "notino.", "flaconi."), _eu_beauty),
    CdnRule("strawberrynet", _contains("strawberrynet.com"), _strawberrynet),
)

_SIZE_WORD_SUFFIX = re.compile(r"[-_](small|thumb|thumbnail|xs|sm|md|mini|tiny|preview)\.", re.IGNORECASE)
_NUMERIC_SIZE_SUFFIX = re.compile(r"[-_]\d{2,4}\.(jpg|jpeg|png|webp)", re.IGNORECASE)
_SIZE_PARAMS = {"q", "quality", "w", "width", "h", "height"}


def upgrade_image_url(url: str) -> str:
    """Rewrite a thumbnail URL to its largest known variant.

    CDN-specific rules run first, then generic size-suffix removal. Numeric
    size and quality parameters are dropped only from URLs no CDN rule
    rewrote, since those rules set their own. Unknown URLs pass through with
    only the generic cleanup.

    Raises:
        ValueError: the URL cannot be parsed (e.g. a broken IPv6 host)
    """
    upgraded = url
    rewritten = False
    for rule in CDN_RULES:
        if rule.matches(upgraded):
            upgraded = rule.rewrite(upgraded)
            rewritten = True

    upgraded = _SIZE_WORD_SUFFIX.sub(".", upgraded)
    upgraded = _NUMERIC_SIZE_SUFFIX.sub(r".\1", upgraded)
    if not rewritten:
        upgraded = _drop_query_params(upgraded, _SIZE_PARAMS, numeric_only=True)

    if "format=webp" in upgraded.lower() or "fm=webp" in upgraded.lower():
        upgraded = re.sub(r"format=webp", "format=png", upgraded, flags=re.IGNORECASE)
        upgraded = re.sub(r"fm=webp", "fm=png", upgraded, flags=re.IGNORECASE)

    upgraded = re.sub(r"([^:])/{2,}", r"\1/", upgraded)
    if upgraded.endswith("?"):
        upgraded = upgraded[:-1]
    return upgraded


def clean_candidate_urls(raw_urls: list[str], limit: Optional[int] = None) -> list[str]:
    """Normalize, upgrade, deny-list filter and de-duplicate (order preserving)."""
    seen: set[str] = set()
    cleaned: list[str] = []
    for raw in raw_urls:
        if not is_fetchable(raw):
            continue
        try:
            url = upgrade_image_url(normalize_url(raw))
        except ValueError as e:
            logger.debug(f"Skipping unparsable image URL {raw!r}: {e}")
            continue
        if url in seen or not is_product_image_url(url):
            continue
        seen.add(url)
        cleaned.append(url)
        if limit is not None and len(cleaned) >= limit:
            break
    return cleaned
