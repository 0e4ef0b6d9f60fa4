"""Tests for the article model helpers."""

from __future__ import annotations

import pydantic
import pytest

from conftest import BASE_TIME
from news_pipeline.errors import ValidationError
from news_pipeline.models import Article, Category, sort_newest_first


def _fields(**overrides) -> dict:
    fields = dict(
        id="antara-0-1",
        title="Ferry routes to Nusa Penida expanded",
        link="https://antaranews.com/ferry",
        description="More crossings are planned for the dry season.",
        pub_date=BASE_TIME,
        category=Category.BALI,
        source="Antara News",
        source_url="https://antaranews.com/rss",
    )
    fields.update(overrides)
    return fields


class TestArticleBuild:
    def test_valid_fields(self):
        article = Article.build(**_fields())
        assert article.category is Category.BALI
        assert article.pub_date == BASE_TIME

    def test_wrong_type_raises_pipeline_validation_error(self):
        with pytest.raises(ValidationError) as info:
            Article.build(**_fields(author={"name": "Not a string"}))
        assert info.value.source == "Antara News"
        assert isinstance(info.value.__cause__, pydantic.ValidationError)

    def test_missing_field_raises(self):
        fields = _fields()
        del fields["link"]
        with pytest.raises(ValidationError, match="Malformed article"):
            Article.build(**fields)


class TestOrdering:
    def test_undated_sorts_last(self):
        dated = Article.build(**_fields(id="a"))
        undated = Article.build(**_fields(id="b", pub_date=None))
        assert sort_newest_first([undated, dated]) == [dated, undated]
