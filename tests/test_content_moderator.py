"""Tests for content moderation and duplicate detection."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from conftest import FakeClock, make_article, make_articles
from news_pipeline.filter.content_moderator import ContentModerator
from news_pipeline.filter.similarity_checker import SimilarityChecker
from news_pipeline.models import ModerationResult


@pytest.fixture
def moderator() -> ContentModerator:
    return ContentModerator()


class TestSimilarityChecker:
    """Word-set Jaccard similarity."""

    def test_normalize_strips_punctuation_and_case(self):
        assert SimilarityChecker.normalize("  Hello,   WORLD!! ") == "hello world"

    def test_short_words_are_ignored(self):
        assert SimilarityChecker.word_set("an ox is at the gate") == {"the", "gate"}

    def test_empty_union_is_zero(self):
        assert SimilarityChecker.jaccard_similarity(set(), set()) == 0.0

    def test_identical_text_is_one(self):
        checker = SimilarityChecker()
        assert checker.text_similarity("Bali tourism grows fast", "bali tourism grows fast!") == 1.0

    def test_combined_weights_title_and_description(self):
        checker = SimilarityChecker()
        a = make_article(title="alpha bravo charlie", description="delta echo foxtrot")
        b = make_article(title="alpha bravo charlie", description="golf hotel india")
        match = checker.compare(a, b)
        assert match.title_similarity == 1.0
        assert match.description_similarity == 0.0
        assert match.combined == pytest.approx(0.7)


class TestDuplicateDetection:
    """Near-identical articles are flagged as high-severity duplicates."""

    def test_paraphrased_article_flagged_duplicate(self, moderator):
        original = make_article(
            index=0,
            title="Indonesia central bank holds interest rates steady",
            description="Bank Indonesia kept its benchmark rate unchanged on Thursday amid inflation concerns.",
        )
        paraphrase = make_article(
            index=1,
            title="Indonesia central bank holds interest rates steady again",
            description="Bank Indonesia kept its benchmark rate unchanged on Thursday amid global concerns.",
        )
        result = moderator.moderate_article(paraphrase, [original])

        duplicate_flags = [f for f in result.flags if f.type == "duplicate"]
        assert len(duplicate_flags) == 1
        assert duplicate_flags[0].severity == "high"
        assert duplicate_flags[0].confidence >= 0.65
        assert duplicate_flags[0].description.startswith("Similar to existing article:")
        assert result.approved is False

    def test_unrelated_articles_not_flagged(self, moderator):
        first, second = make_articles(2)
        result = moderator.moderate_article(second, [first])
        assert not any(f.type == "duplicate" for f in result.flags)
        assert result.approved is True


class TestQualityChecks:
    """Low-quality findings and the approval rule."""

    def test_tiny_article_with_bad_link_is_rejected(self, moderator):
        article = make_article(title="abc", description="short", link="not a url")
        result = moderator.moderate_article(article)

        assert result.score < 0.3
        assert result.approved is False
        assert len(result.flags) >= 2
        assert any(f.severity == "high" for f in result.flags)
        assert "Title is missing or too short" in result.reason
        assert "Invalid or missing URL" in result.reason

    def test_clean_article_is_approved_with_full_score(self, moderator):
        result = moderator.moderate_article(make_article())
        assert result.approved is True
        assert result.score == 1.0
        assert result.flags == []
        assert result.reason is None

    def test_missing_date_is_low_severity(self, moderator):
        result = moderator.moderate_article(make_article(pub_date=None))
        flags = [f for f in result.flags if f.description == "Invalid or missing publication date"]
        assert flags and flags[0].severity == "low"
        assert result.score == pytest.approx(0.9)
        assert result.approved is True

    def test_shouting_title_flagged(self, moderator):
        result = moderator.moderate_article(make_article(title="BALI TOURISM HITS NEW RECORD"))
        assert any(f.description == "Excessive capitalization in title" for f in result.flags)

    def test_long_title_flagged(self, moderator):
        title = " ".join(f"word{i}" for i in range(25))
        result = moderator.moderate_article(make_article(title=title))
        assert any("unusually long" in f.description for f in result.flags)

    def test_two_word_title_flagged_medium(self, moderator):
        result = moderator.moderate_article(make_article(title="Bali floods"))
        flag = next(f for f in result.flags if f.description == "Title is too short")
        assert flag.severity == "medium"

    @pytest.mark.parametrize(
        "url, valid",
        [
            ("https://example.com/a", True),
            ("http://example.com", True),
            ("ftp://example.com/file", False),
            ("https://", False),
            ("", False),
            ("/relative/path", False),
        ],
    )
    def test_url_validation(self, url, valid):
        assert ContentModerator.is_valid_url(url) is valid

    def test_medium_reason_used_when_no_high_flags(self):
        moderator = ContentModerator(min_quality_score=0.95)
        result = moderator.moderate_article(make_article(title="Bali floods"))
        assert result.approved is False
        assert result.reason == "Title is too short"


class TestSourceReliability:
    """Reliability table lookup and caching."""

    def test_known_source_has_table_score(self, moderator):
        assert moderator.get_source_reliability("BBC Asia") == 0.9

    def test_api_suffix_is_stripped_before_lookup(self, moderator):
        assert moderator.get_source_reliability("Antara News (NewsData.io)") == 0.8

    def test_unknown_source_flagged_unreliable(self, moderator):
        result = moderator.moderate_article(make_article(source="Unknown Blog"))
        flag = next(f for f in result.flags if f.type == "unreliable_source")
        assert flag.severity == "medium"
        assert "0.4" in flag.description
        assert result.score == pytest.approx(0.7)
        assert result.approved is True

    def test_needs_review_below_point_seven(self, moderator):
        assert moderator.get_source_flags("Unknown Blog") == ["needs_review"]
        assert moderator.get_source_flags("Press TV") == []
        assert moderator.get_source_flags("BBC Asia") == []

    def test_reliability_cached_for_a_day(self):
        clock = FakeClock()
        moderator = ContentModerator(clock=clock)
        moderator.get_source_reliability("TASS")
        with patch.dict(moderator._known_sources, {"TASS": 0.1}):
            assert moderator.get_source_reliability("TASS") == 0.8
            clock.advance(24 * 3600 + 1)
            assert moderator.get_source_reliability("TASS") == 0.1

    def test_clear_reliability_cache(self, moderator):
        moderator.get_source_reliability("TASS")
        moderator.clear_reliability_cache()
        with patch.dict(moderator._known_sources, {"TASS": 0.2}):
            assert moderator.get_source_reliability("TASS") == 0.2


class TestSpamDetection:
    """Spam keyword, promo and punctuation rules."""

    def test_two_spam_keywords(self, moderator):
        article = make_article(
            title="Casino lottery jackpot waiting",
            description="Spin the wheel for prizes at the resort this weekend.",
        )
        result = moderator.moderate_article(article)
        flag = next(f for f in result.flags if f.type == "spam")
        assert flag.severity == "high"
        assert flag.confidence == 0.9
        assert flag.description == "Contains spam keywords: casino, lottery"
        assert result.approved is False

    def test_single_spam_keyword_is_tolerated(self, moderator):
        article = make_article(title="Lottery results published today")
        assert not any(f.type == "spam" for f in moderator.moderate_article(article).flags)

    def test_promotional_language(self, moderator):
        article = make_article(
            title="Bali beach guide for families",
            description="Subscribe to our list, follow us online and share this guide with friends.",
        )
        flag = next(f for f in moderator.moderate_article(article).flags if f.type == "spam")
        assert flag.confidence == 0.7
        assert flag.description.startswith("Contains excessive promotional language:")

    def test_excessive_punctuation(self, moderator):
        article = make_article(
            title="Is this the best beach ever???",
            description="Really? You will not believe the view from this cliff walk.",
        )
        flag = next(f for f in moderator.moderate_article(article).flags if f.type == "spam")
        assert flag.confidence == 0.6
        assert flag.severity == "high"

    def test_only_first_spam_rule_flagged(self, moderator):
        article = make_article(
            title="Winner! Congratulations! Casino!!!",
            description="Click here now!!! Subscribe, follow us, share this.",
        )
        spam_flags = [f for f in moderator.moderate_article(article).flags if f.type == "spam"]
        assert len(spam_flags) == 1
        assert spam_flags[0].confidence == 0.9


class TestBatchModeration:
    """Left-to-right batch moderation."""

    def test_each_article_compared_only_with_earlier_ones(self, moderator):
        a, b, c = make_articles(3)
        with patch.object(
            moderator, "moderate_article", wraps=moderator.moderate_article
        ) as spy:
            moderator.moderate_articles([a, b, c])

        priors = [call.args[1] for call in spy.call_args_list]
        assert priors == [[], [a], [a, b]]

    def test_rejected_articles_still_count_as_prior(self, moderator):
        bad = make_article(index=0, link="broken")
        repeat = make_article(index=0, link="https://news.example.com/repeat")
        batch = moderator.moderate_articles([bad, repeat])
        assert batch.rejected == [bad, repeat]
        assert any(f.type == "duplicate" for f in batch.results[1].flags)

    def test_batch_splits_approved_and_rejected(self, moderator):
        good = make_articles(2)
        bad = make_article(index=5, title="x", description="", link="")
        batch = moderator.moderate_articles([good[0], bad, good[1]])
        assert batch.approved == good
        assert batch.rejected == [bad]
        assert len(batch.results) == 3

    def test_quality_metrics(self, moderator):
        good = make_articles(2)
        bad = make_article(index=5, title="x", description="", link="")
        batch = moderator.moderate_articles([*good, bad])
        metrics = moderator.get_quality_metrics(batch.results)
        assert metrics["total"] == 3
        assert metrics["approved"] == 2
        assert metrics["approval_rate"] == pytest.approx(66.7)
        assert metrics["flag_counts"]["low_quality"] >= 3

    def test_cumulative_stats(self, moderator):
        moderator.moderate_articles(make_articles(3))
        stats = moderator.get_stats()
        assert stats["total_articles_processed"] == 3
        assert stats["approved_articles"] == 3


class TestModerationResult:
    def test_approved_result_cannot_carry_high_flag(self):
        with pytest.raises(ValueError):
            ModerationResult(
                approved=True,
                score=0.9,
                flags=[
                    {"type": "spam", "severity": "high", "description": "x", "confidence": 0.9}
                ],
            )
