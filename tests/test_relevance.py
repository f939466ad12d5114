"""Tests for the fragrance page relevance check."""

import pytest

from conftest import FakePage
from sku_studio.ingest.relevance import PageText, check_page_relevance, is_relevant_product


def test_headline_keyword_accepts():
    assert is_relevant_product(PageText(title="bleu de chanel eau de parfum 100ml"))


def test_non_fragrance_headline_rejects_even_with_fragrance_words():
    page = PageText(title="xiaomi smart tv 55", body="perfume cologne fragrance")
    assert not is_relevant_product(page)


def test_meta_description_accepts():
    assert is_relevant_product(PageText(title="item 3348901250153", meta_description="a woody fragrance"))


def test_body_needs_two_distinct_keywords():
    assert not is_relevant_product(PageText(title="item 1", body="a lovely scent"))
    assert is_relevant_product(PageText(title="item 1", body="a lovely scent in a perfume bottle"))


def test_from_dict_lowercases_and_tolerates_missing_fields():
    page = PageText.from_dict({"title": "DIOR Sauvage", "h1": None})
    assert page.title == "dior sauvage"
    assert page.h1 == ""


@pytest.mark.asyncio
async def test_check_page_relevance_reads_live_page():
    assert await check_page_relevance(FakePage(page_text={"title": "Sauvage Eau de Toilette"}))
    assert not await check_page_relevance(FakePage(page_text={"title": "4K Television", "h1": "Samsung TV"}))


@pytest.mark.asyncio
async def test_unreadable_page_counts_as_relevant():
    class BrokenPage(FakePage):
        async def evaluate(self, script, arg=None):
            raise RuntimeError("Execution context was destroyed")

    assert await check_page_relevance(BrokenPage())
