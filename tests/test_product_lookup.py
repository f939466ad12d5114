"""Tests for product lookup parsing and error handling."""

from types import SimpleNamespace

import pytest
from openai import OpenAIError

from sku_studio.ingest.product_lookup import ProductLookup, match_catalog_store, parse_lookup_response

ANSWER = """PRODUCT_NAME: Bleu de Chanel Eau de Parfum 100ml
BRAND: Chanel
DESCRIPTION: A woody aromatic fragrance for men.
STORES:
1. Jomashop - https://www.jomashop.com/chanel-bleu-de-chanel.html
2. FragranceX - https://www.fragrancex.com/products/_cid_cologne-am-lid_b-am-pid_71190m__products.html).
3. Tiny Perfume Shop - https://tinyperfumes.example.org/p/1
"""


class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_client(completions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def test_parse_lookup_response_fields_and_stores():
    result = parse_lookup_response(ANSWER)

    assert result.found
    assert result.product_name == "Bleu de Chanel Eau de Parfum 100ml"
    assert result.brand == "Chanel"
    assert result.description == "A woody aromatic fragrance for men."
    assert [s.name for s in result.suggested_stores] == ["Jomashop", "FragranceX", "Tiny Perfume Shop"]
    assert result.suggested_stores[1].url.endswith("__products.html")
    assert result.matched_stores == ["Jomashop", "FragranceX"]
    assert result.suggested_stores[2].matched_store is None


def test_parse_not_found():
    result = parse_lookup_response("PRODUCT_NOT_FOUND: true")
    assert not result.found
    assert result.suggested_stores == []


def test_match_catalog_store_by_domain():
    assert match_catalog_store("Some Reseller", "https://fragrancenet.com/item/1") == "FragranceNet"
    assert match_catalog_store("", "") is None


@pytest.mark.asyncio
async def test_lookup_uses_client_and_parses():
    completions = FakeCompletions(content=ANSWER)
    lookup = ProductLookup(client=fake_client(completions))

    result = await lookup.lookup("3145891074604")

    assert result.brand == "Chanel"
    assert "3145891074604" in completions.calls[0]["messages"][1]["content"]


@pytest.mark.asyncio
async def test_lookup_error_degrades_to_empty_result():
    lookup = ProductLookup(client=fake_client(FakeCompletions(error=OpenAIError("rate limited"))))

    result = await lookup.lookup("3145891074604")

    assert not result.found
    assert result.raw_response.startswith("error:")


@pytest.mark.asyncio
async def test_lookup_disabled_without_key():
    result = await ProductLookup().lookup("3145891074604")
    assert result.raw_response == "disabled"
