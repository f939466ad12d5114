"""Static catalog of scrapeable retailers."""

import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote, urlparse


@dataclass(frozen=True)
class StoreSelectors:
    """CSS selectors for one store's search and product pages."""

    product_link: str
    product_image: str
    no_results: str
    product_found: Optional[str] = None  # Visible only on a product detail page


@dataclass(frozen=True)
class StoreConfig:
    """Immutable per-store scraping recipe."""

    name: str
    base_url: str
    search_url_template: str  # Contains "{sku}"
    selectors: StoreSelectors
    image_url_filter: Optional[str] = None  # Regex applied to full-page scan results
    min_width: int = 200
    min_height: int = 200
    is_active: bool = True
    notes: str = ""

    @property
    def domain(self) -> str:
        host = urlparse(self.base_url).netloc.lower()
        return host[4:] if host.startswith("www.") else host

    def accepts_scanned_url(self, url: str) -> bool:
        if not self.image_url_filter:
            return True
        return re.search(self.image_url_filter, url, re.IGNORECASE) is not None


STORE_CATALOG: tuple[StoreConfig, ...] = (
    StoreConfig(
        name="Jomashop",
        base_url="https://www.jomashop.com",
        search_url_template="https://www.jomashop.com/search?q={sku}",
        selectors=StoreSelectors(
            product_link="a.product-card-link",
            product_image="img.slide-item-main-image, .product-gallery img",
            no_results="div.search-empty-container",
            product_found="div.product-info-main, h1.product-name",
        ),
        notes="Luxury watches and fragrances; results load dynamically.",
    ),
    StoreConfig(
        name="FragranceX",
        base_url="https://www.fragrancex.com",
        search_url_template="https://www.fragrancex.com/search/search_results?sText={sku}",
        selectors=StoreSelectors(
            product_link=".div-featured-img > a",
            product_image="#main-product-image, #thumbnail-carousel a img",
            no_results=".nomatch",
            product_found="#main-product-image",
        ),
        image_url_filter=r"fragrancex",
    ),
    StoreConfig(
        name="FragranceNet",
        base_url="https://www.fragrancenet.com",
        search_url_template="https://www.fragrancenet.com/search?q={sku}",
        selectors=StoreSelectors(
            product_link="div.result a",
            product_image="img.hover-zoom-image, .product-image img",
            no_results="div.n-found",
        ),
        image_url_filter=r"fragrancenet|fncdn",
    ),
    StoreConfig(
        name="Maxaroma",
        base_url="https://www.maxaroma.com",
        search_url_template="https://www.maxaroma.com/p4u/key-{sku}/view",
        selectors=StoreSelectors(
            product_link="a.product-image-photo",
            product_image="div.fotorama__stage__frame img, .gallery-placeholder img",
            no_results="p.note-msg",
        ),
    ),
    StoreConfig(
        name="Walmart",
        base_url="https://www.walmart.com",
        search_url_template="https://www.walmart.com/search?q={sku}",
        selectors=StoreSelectors(
            product_link="a[data-testid='product-title-link']",
            product_image="img.hover-zoom-hero-image, img[data-testid='product-image']",
            no_results="div[data-testid='zero-results']",
        ),
        image_url_filter=r"walmartimages",
        is_active=False,
        notes="Strong anti-bot protection.",
    ),
    StoreConfig(
        name="Amazon",
        base_url="https://www.amazon.com",
        search_url_template="https://www.amazon.com/s?k={sku}",
        selectors=StoreSelectors(
            product_link="a.a-link-normal.s-no-outline",
            product_image="img.s-image, #landingImage, #imgTagWrapperId img",
            no_results=".s-no-results-message",
            product_found="#productTitle",
        ),
        image_url_filter=r"media-amazon|images-amazon",
        is_active=False,
        notes="Strong anti-bot protection.",
    ),
    StoreConfig(
        name="Sephora",
        base_url="https://www.sephora.com",
        search_url_template="https://www.sephora.com/search?keyword={sku}",
        selectors=StoreSelectors(
            product_link="a[data-test-id='product-link']",
            product_image="img[data-test-id='product-image'], .product-image img",
            no_results="[data-test-id='no-results']",
        ),
        is_active=False,
        notes="Anti-bot protection.",
    ),
    StoreConfig(
        name="Nordstrom",
        base_url="https://www.nordstrom.com",
        search_url_template="https://www.nordstrom.com/browse/search?keyword={sku}",
        selectors=StoreSelectors(
            product_link="a[href*='/s/']",
            product_image="img[alt*='product'], .product-photo img",
            no_results="div[data-test-id='no-results']",
        ),
        is_active=False,
        notes="Anti-bot protection.",
    ),
    StoreConfig(
        name="Macy's",
        base_url="https://www.macys.com",
        search_url_template="https://www.macys.com/shop/featured/{sku}",
        selectors=StoreSelectors(
            product_link="a.brand-and-name",
            product_image="img[data-auto='product-image'], .product-image img",
            no_results="div.no-results-container",
        ),
        image_url_filter=r"slimages\.macysassets|macys",
    ),
    StoreConfig(
        name="Ulta Beauty",
        base_url="https://www.ulta.com",
        search_url_template="https://www.ulta.com/search?search={sku}",
        selectors=StoreSelectors(
            product_link=".product-card-link",
            product_image=".MediaWrapper__Image img, .product-image img",
            no_results="h1:has-text(\"We couldn't find any results\")",
        ),
        notes="Search results load dynamically.",
    ),
    StoreConfig(
        name="BeautyTheShop",
        base_url="https://www.beautytheshop.com",
        search_url_template="https://www.beautytheshop.com/es/buscar?search={sku}",
        selectors=StoreSelectors(
            product_link=".product-image-container a",
            product_image="#product-image-container img, #product-image-thumbs img",
            no_results=".search-no-results",
        ),
    ),
    StoreConfig(
        name="50-ml.com",
        base_url="https://50-ml.com",
        search_url_template="https://50-ml.com/catalogsearch/result?q={sku}",
        selectors=StoreSelectors(
            product_link="a.product.photo",
            product_image="img.fotorama__img, .product-image img",
            no_results="div.message.info.empty",
        ),
    ),
    StoreConfig(
        name="Maple Prime",
        base_url="https://mapleprime.com",
        search_url_template="https://mapleprime.com/pages/search?q={sku}",
        selectors=StoreSelectors(
            product_link=".snize-product-list-item-image a",
            product_image=".product-gallery__media img, .product-image img",
            no_results=".snize-page-title",
        ),
        image_url_filter=r"cdn\.shopify|/cdn/shop/",
    ),
    StoreConfig(
        name="Luxe Fora",
        base_url="https://luxefora.com",
        search_url_template="https://luxefora.com/search?q={sku}",
        selectors=StoreSelectors(
            product_link="a.full-unstyled-link",
            product_image="div.product__media-item img, .product-image img",
            no_results="h2.template-search__title",
        ),
        image_url_filter=r"cdn\.shopify|/cdn/shop/",
    ),
    StoreConfig(
        name="Fandi Perfume",
        base_url="https://fandi-perfume.com",
        search_url_template="https://fandi-perfume.com/search?q={sku}",
        selectors=StoreSelectors(
            product_link=".product-card a",
            product_image=".product-gallery img, .product-image img",
            no_results=".search-no-results",
        ),
        is_active=False,
        notes="Search does not support identifiers.",
    ),
    StoreConfig(
        name="Paris Gallery",
        base_url="https://parisgallery.ae",
        search_url_template="https://parisgallery.ae/search?q={sku}&options%5Bprefix%5D=last",
        selectors=StoreSelectors(
            product_link="a.grid-view-item__link",
            product_image="img.product-single__photo-img, .product-image img",
            no_results="h1.template-search__title",
        ),
        image_url_filter=r"cdn\.shopify|/cdn/shop/",
    ),
    StoreConfig(
        name="Elegance Style",
        base_url="https://elegancestyle.ae",
        search_url_template="https://elegancestyle.ae/catalogsearch/result/?q={sku}",
        selectors=StoreSelectors(
            product_link="a.product-item-link",
            product_image="img.gallery-placeholder__image, .product-image img",
            no_results=".message.info.empty",
        ),
    ),
    StoreConfig(
        name="V Perfumes",
        base_url="https://www.vperfumes.com",
        search_url_template="https://www.vperfumes.com/ae-en/products?search={sku}",
        selectors=StoreSelectors(
            product_link="div.product-card > a",
            product_image="figure.relative img, .product-image img",
            no_results="div.text-center.my-5 > h3",
        ),
    ),
    StoreConfig(
        name="Alluring Auras",
        base_url="https://www.alluringauras.com",
        search_url_template="https://www.alluringauras.com/?s={sku}&product_cat=&post_type=product",
        selectors=StoreSelectors(
            product_link="h3.tbay-woocommerce-title-product a",
            product_image="div.woocommerce-product-gallery__image > a > img, .product-image img",
            no_results="p.woocommerce-info",
            product_found="div.woocommerce-product-gallery",
        ),
        image_url_filter=r"wp-content/uploads",
    ),
    StoreConfig(
        name="Eshtir.com",
        base_url="https://www.eshtir.com",
        search_url_template="https://www.eshtir.com/?s={sku}&post_type=product",
        selectors=StoreSelectors(
            product_link="a.woocommerce-LoopProduct-link",
            product_image=".woocommerce-product-gallery__image img, .product-image img",
            no_results=".woocommerce-info",
            product_found="div.woocommerce-product-gallery",
        ),
        image_url_filter=r"wp-content/uploads",
    ),
)


def get_active_stores() -> list[StoreConfig]:
    """All stores enabled for scraping, in catalog order."""
    return [store for store in STORE_CATALOG if store.is_active]


def get_store_by_name(name: str) -> Optional[StoreConfig]:
    wanted = name.strip().lower()
    for store in STORE_CATALOG:
        if store.name.lower() == wanted:
            return store
    return None


def get_store_by_url(url: str) -> Optional[StoreConfig]:
    """Catalog store whose domain matches ``url``'s host, if any."""
    host = urlparse(url if "//" in url else f"https://{url}").netloc.lower()
    for store in STORE_CATALOG:
        if host == store.domain or host.endswith("." + store.domain):
            return store
    return None


def build_search_url(store: StoreConfig, identifier: str) -> str:
    return store.search_url_template.replace("{sku}", quote(identifier, safe=""))
