"""Tests for image URL normalization, CDN upgrades and filtering."""

import pytest

from sku_studio.ingest.url_filters import (
    clean_candidate_urls,
    is_product_image_url,
    normalize_url,
    upgrade_image_url,
    widest_srcset_entry,
)


def test_normalize_protocol_relative():
    assert normalize_url("  //cdn.example.com/a.jpg ") == "https://cdn.example.com/a.jpg"
    assert normalize_url("https://cdn.example.com/a.jpg") == "https://cdn.example.com/a.jpg"


@pytest.mark.parametrize(
    "url, expected",
    [
        (
            "https://cdn.shopify.com/s/files/1/0001/products/bottle_400x400.jpg?v=123",
            "https://cdn.shopify.com/s/files/1/0001/products/bottle.jpg?v=123",
        ),
        (
            "https://shop.example.com/wp-content/uploads/2023/05/perfume-300x300.jpg",
            "https://shop.example.com/wp-content/uploads/2023/05/perfume.jpg",
        ),
        (
            "https://res.cloudinary.com/demo/image/upload/w_200,h_200/sample.jpg",
            "https://res.cloudinary.com/demo/image/upload/q_100,f_png/sample.jpg",
        ),
        (
            "https://s7d1.scene7.com/is/image/Brand/12345?wid=300",
            "https://s7d1.scene7.com/is/image/Brand/12345?wid=2000&hei=2000&fmt=png-alpha&qlt=100",
        ),
        (
            "https://img.fragrancex.com/images/products/sku/small/71245w.jpg",
            "https://img.fragrancex.com/images/products/parent/medium/71245w.jpg",
        ),
        (
            "https://example.com/images/product.jpg",
            "https://example.com/images/product.jpg",
        ),
    ],
)
def test_upgrade_image_url(url, expected):
    assert upgrade_image_url(url) == expected


def test_generic_size_suffix_and_params_removed():
    assert upgrade_image_url("https://example.com/img/bottle-thumbnail.jpg") == "https://example.com/img/bottle.jpg"
    assert upgrade_image_url("https://example.com/img/bottle.jpg?w=300&h=300") == "https://example.com/img/bottle.jpg"


def test_widest_srcset_entry():
    srcset = "https://x/a-small.jpg 320w, https://x/a-large.jpg 1280w, https://x/a-mid.jpg 640w"
    assert widest_srcset_entry(srcset) == "https://x/a-large.jpg"


def test_deny_list():
    assert is_product_image_url("https://example.com/products/dior-sauvage.jpg")
    assert not is_product_image_url("https://example.com/static/logo.png")
    assert not is_product_image_url("https://example.com/icons/paypal.png")
    assert not is_product_image_url("https://example.com/assets/script.js")


def test_clean_candidate_urls_dedupes_filters_and_limits():
    raw = [
        "//cdn.example.com/products/a.jpg",
        "https://cdn.example.com/products/a.jpg",
        "https://cdn.example.com/logo.png",
        "data:image/png;base64,AAAA",
        "https://cdn.example.com/products/b.jpg",
        "https://cdn.example.com/products/c.jpg",
    ]
    assert clean_candidate_urls(raw) == [
        "https://cdn.example.com/products/a.jpg",
        "https://cdn.example.com/products/b.jpg",
        "https://cdn.example.com/products/c.jpg",
    ]
    assert len(clean_candidate_urls(raw, limit=2)) == 2


def test_fastly_rewrites_only_size_params():
    assert (
        upgrade_image_url("https://images.global.ssl.fastly.net/p/a.jpg?width=100&foo=1")
        == "https://images.global.ssl.fastly.net/p/a.jpg?foo=1&quality=100"
    )
    assert (
        upgrade_image_url("https://images.global.ssl.fastly.net/p/a.jpg?quality=80")
        == "https://images.global.ssl.fastly.net/p/a.jpg?quality=100"
    )


def test_generic_params_keep_the_rest_of_the_query():
    assert (
        upgrade_image_url("https://example.com/img/bottle.jpg?w=300&color=red")
        == "https://example.com/img/bottle.jpg?color=red"
    )


def test_clean_candidate_urls_skips_unparsable_hosts():
    raw = ["https://[broken/products/x.jpg", "https://cdn.example.com/products/a.jpg"]
    assert clean_candidate_urls(raw) == ["https://cdn.example.com/products/a.jpg"]
