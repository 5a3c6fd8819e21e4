"""Tests for session analysis and cross-session aggregation."""

import json
import pytest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from aura.analysis.aggregator import AnalysisAggregator
from aura.analysis.analyzer import (
    GeminiSessionAnalyzer,
    SyntheticSessionAnalyzer,
    estimate_speaking_time,
    parse_analysis_payload,
)
from aura.analysis.service import AnalysisService
from aura.config.settings import AnalysisSettings
from aura.errors import TransientProviderError
from aura.state.models import (
    Message,
    Provenance,
    Role,
    Sentiment,
    SentimentTrend,
    Session,
    SessionAnalysis,
    ThemeScore,
)
from aura.state.session_store import SessionStore
from aura.state.storage import LocalStorage


BASE_TIME = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def analyzed_session(index, positive, themes=(), recommendations=(), provenance=Provenance.LLM, minutes=10):
    started = BASE_TIME + timedelta(days=index)
    negative = round((1 - positive) / 2, 2)
    return Session(
        id=f"session_{index}",
        user_id="user_1",
        voice_id="v",
        started_at=started,
        ended_at=started + timedelta(minutes=minutes),
        conversation=[Message(role=Role.USER, content="hi", timestamp=started)],
        analysis=SessionAnalysis(
            sentiment=Sentiment(positive=positive, neutral=round(1 - positive - negative, 2), negative=negative),
            themes=[ThemeScore(name=n, strength=s) for n, s in themes],
            recommendations=list(recommendations),
            last_updated=started + timedelta(minutes=minutes),
            provenance=provenance,
        ),
    )


class TestSentiment:

    def test_normalized_sums_to_one(self):
        for values in [(1, 1, 1), (0.7, 0.2, 0.2), (3, 0, 1), (0.333, 0.333, 0.334)]:
            sentiment = Sentiment.normalized(*values)
            assert abs(sentiment.total - 1.0) <= 0.01

    def test_rounding_never_goes_negative(self):
        # both shares round up here, which used to leave neutral at -0.01
        sentiment = Sentiment.normalized(0.665, 0, 0.335)
        assert sentiment.neutral == 0.0
        assert sentiment.total == pytest.approx(1.0)

        for step in range(1, 200):
            positive = step / 200
            sentiment = Sentiment.normalized(positive, 0.001, 1 - positive)
            assert min(sentiment.positive, sentiment.neutral, sentiment.negative) >= 0
            assert sentiment.total == pytest.approx(1.0)

    def test_all_zero_is_neutral(self):
        assert Sentiment.normalized(0, 0, 0) == Sentiment(positive=0.0, neutral=1.0, negative=0.0)


class TestSentimentTrend:

    @pytest.mark.parametrize("positives, trend", [
        ([0.40, 0.62], SentimentTrend.IMPROVING),
        ([0.70, 0.50], SentimentTrend.DECLINING),
        ([0.50, 0.80, 0.55], SentimentTrend.MIXED),
        ([0.50, 0.55, 0.52], SentimentTrend.STEADY),
        ([0.40, 0.55], SentimentTrend.STEADY),
        ([0.60], SentimentTrend.STEADY),
    ])
    def test_classification(self, positives, trend):
        assert AnalysisAggregator().sentiment_trend(positives) == trend

    def test_thresholds_are_configurable(self):
        aggregator = AnalysisAggregator(AnalysisSettings(trend_threshold=0.05))
        assert aggregator.sentiment_trend([0.40, 0.48]) == SentimentTrend.IMPROVING


class TestAnalysisAggregator:

    def test_improving_scenario(self):
        result = AnalysisAggregator().aggregate([
            analyzed_session(1, 0.62),
            analyzed_session(0, 0.40),
        ])
        assert result.progress.sentiment_trend == SentimentTrend.IMPROVING
        assert result.progress.sessions == 2
        assert result.overall_sentiment.positive == 0.51

    def test_overall_sentiment_sums_to_one(self):
        result = AnalysisAggregator().aggregate([
            analyzed_session(0, 0.40), analyzed_session(1, 0.62), analyzed_session(2, 0.55),
        ])
        assert abs(result.overall_sentiment.total - 1.0) <= 0.02

    def test_common_themes_ranked_by_frequency_then_strength(self):
        result = AnalysisAggregator().aggregate([
            analyzed_session(0, 0.5, themes=[("anxiety", 0.9), ("sleep", 0.4)]),
            analyzed_session(1, 0.5, themes=[("Anxiety", 0.7), ("work", 0.8)]),
            analyzed_session(2, 0.5, themes=[("sleep", 0.6), ("family", 0.2)]),
        ])
        names = [t.name for t in result.common_themes]
        assert names[:2] == ["Anxiety", "Sleep"]
        assert result.common_themes[0].frequency == 2
        assert result.common_themes[0].average_strength == 0.8
        assert names.index("Work") < names.index("Family")

    def test_theme_cutoff(self):
        themes = [(f"theme {i}", 0.5) for i in range(8)]
        result = AnalysisAggregator().aggregate([analyzed_session(0, 0.5, themes=themes)])
        assert len(result.common_themes) == 5

    def test_theme_evolution_needs_recurrence_and_is_capped(self):
        shared = [("a", 0.5), ("b", 0.5), ("c", 0.5), ("d", 0.5), ("e", 0.5)]
        result = AnalysisAggregator().aggregate([
            analyzed_session(0, 0.5, themes=shared + [("once", 0.9)]),
            analyzed_session(1, 0.5, themes=shared),
        ])

        names = {e.name for e in result.theme_evolution}
        assert len(result.theme_evolution) == 4
        assert "Once" not in names
        first = result.theme_evolution[0]
        assert [p.session_index for p in first.evolution] == [0, 1]
        assert first.evolution[0].date == "2024-05-01"

    def test_no_evolution_for_single_session(self):
        result = AnalysisAggregator().aggregate([analyzed_session(0, 0.5, themes=[("a", 0.5)])])
        assert result.theme_evolution == []

    def test_top_recommendations(self):
        result = AnalysisAggregator().aggregate([
            analyzed_session(0, 0.5, recommendations=["Try journaling", "Sleep earlier"]),
            analyzed_session(1, 0.5, recommendations=["try journaling ", "Walk daily"]),
        ])
        assert result.top_recommendations[0] == "Try journaling"
        assert len(result.top_recommendations) == 3

    def test_average_length_in_minutes(self):
        result = AnalysisAggregator().aggregate([
            analyzed_session(0, 0.5, minutes=10), analyzed_session(1, 0.5, minutes=20),
        ])
        assert result.progress.average_session_length == 15.0

    def test_synthetic_excluded_by_default(self):
        sessions = [
            analyzed_session(0, 0.4),
            analyzed_session(1, 0.9, provenance=Provenance.SYNTHETIC),
        ]
        result = AnalysisAggregator().aggregate(sessions)

        assert result.progress.sessions == 1
        assert result.excluded_synthetic == 1
        assert result.provenance == Provenance.LLM

        included = AnalysisAggregator().aggregate(sessions, include_synthetic=True)
        assert included.progress.sessions == 2
        assert included.provenance == Provenance.MIXED

    def test_nothing_analyzed(self):
        result = AnalysisAggregator().aggregate([])
        assert result.provenance == Provenance.NONE
        assert result.progress.sessions == 0
        assert result.to_dict()["progressOverTime"]["sentimentTrend"] == "steady"


class TestAnalyzers:

    def test_parse_payload_from_fenced_reply(self):
        reply = "```json\n" + json.dumps({
            "sentiment": {"positive": 0.5, "neutral": 0.3, "negative": 0.2},
            "themes": [{"name": "Stress", "strength": 0.7}],
            "recommendations": ["Breathe"],
        }) + "\n```"
        assert parse_analysis_payload(reply)["themes"][0]["name"] == "Stress"

    @pytest.mark.parametrize("reply", ["no json here", '{"themes": []}', '{"sentiment": {"positive": "high"}}'])
    def test_parse_payload_rejects(self, reply):
        with pytest.raises(ValueError):
            parse_analysis_payload(reply)

    def test_speaking_time_estimate(self):
        session = analyzed_session(0, 0.5)
        session.conversation = [
            Message(role=Role.USER, content="x" * 100),
            Message(role=Role.ASSISTANT, content="y" * 40),
        ]
        estimate = estimate_speaking_time(session, seconds_per_char=0.05)
        assert (estimate.user, estimate.assistant) == (5, 2)

    @pytest.mark.asyncio
    async def test_gemini_analyzer(self):
        reply = json.dumps({
            "sentiment": {"positive": 0.6, "neutral": 0.3, "negative": 0.2},
            "themes": [{"name": "Work stress", "strength": 1.4}],
            "recommendations": ["Take breaks"],
        })
        model = MagicMock()
        model.generate_content_async = AsyncMock(return_value=SimpleNamespace(text=reply))
        analyzer = GeminiSessionAnalyzer(model=model)

        analysis = await analyzer.analyze(analyzed_session(0, 0.5))

        assert analysis.provenance == Provenance.LLM
        assert abs(analysis.sentiment.total - 1.0) <= 0.01
        assert analysis.themes[0].strength == 1.0
        config = model.generate_content_async.call_args.kwargs["generation_config"]
        assert config.temperature == 0.4
        assert "USER: hi" in model.generate_content_async.call_args.args[0]

    @pytest.mark.asyncio
    async def test_gemini_analyzer_bad_reply(self):
        model = MagicMock()
        model.generate_content_async = AsyncMock(return_value=SimpleNamespace(text="I can't do that"))
        with pytest.raises(TransientProviderError):
            await GeminiSessionAnalyzer(model=model).analyze(analyzed_session(0, 0.5))

    @pytest.mark.asyncio
    async def test_synthetic_is_reproducible_and_flagged(self):
        session = analyzed_session(3, 0.5)
        first = await SyntheticSessionAnalyzer(seed=7).analyze(session)
        second = await SyntheticSessionAnalyzer(seed=7).analyze(session)

        assert first.provenance == Provenance.SYNTHETIC
        assert first.sentiment == second.sentiment
        assert [t.name for t in first.themes] == [t.name for t in second.themes]
        assert 3 <= len(first.themes) <= 5
        assert abs(first.sentiment.total - 1.0) <= 0.01


class FailingAnalyzer:
    name = "llm"

    async def analyze(self, session):
        raise TransientProviderError("llm", "quota exceeded")


class TestAnalysisService:

    def make_store(self, tmp_path):
        store = SessionStore(LocalStorage(tmp_path), user_id="user_1").open()
        session = store.create()
        store.add_message(session.id, Message(role=Role.USER, content="I've been anxious"))
        return store, session.id

    @pytest.mark.asyncio
    async def test_refresh_falls_back_to_synthetic(self, tmp_path):
        store, session_id = self.make_store(tmp_path)
        service = AnalysisService(store, [FailingAnalyzer()])

        result = await service.refresh()

        assert store.get(session_id).analysis.provenance == Provenance.SYNTHETIC
        assert result.progress.sessions == 0
        assert result.excluded_synthetic == 1

        included = await service.refresh(include_synthetic=True)
        assert included.provenance == Provenance.SYNTHETIC

    @pytest.mark.asyncio
    async def test_refresh_skips_up_to_date_sessions(self, tmp_path):
        store, session_id = self.make_store(tmp_path)
        analyzer = MagicMock()
        analyzer.name = "llm"
        analyzer.analyze = AsyncMock(return_value=SessionAnalysis(
            sentiment=Sentiment(positive=0.5, neutral=0.3, negative=0.2),
            last_updated=datetime.now(timezone.utc) + timedelta(seconds=5),
        ))
        service = AnalysisService(store, [analyzer])

        await service.refresh()
        await service.refresh()
        assert analyzer.analyze.await_count == 1

        await service.refresh(force=True)
        assert analyzer.analyze.await_count == 2

    @pytest.mark.asyncio
    async def test_new_messages_make_analysis_stale(self, tmp_path):
        store, session_id = self.make_store(tmp_path)
        service = AnalysisService(store, [FailingAnalyzer()])
        await service.analyze_session(session_id)

        assert not service.needs_analysis(store.get(session_id))
        store.add_message(session_id, Message(role=Role.USER, content="one more thing",
                                              timestamp=datetime.now(timezone.utc) + timedelta(minutes=1)))
        assert service.needs_analysis(store.get(session_id))

    @pytest.mark.asyncio
    async def test_unknown_session(self, tmp_path):
        store, _ = self.make_store(tmp_path)
        assert await AnalysisService(store, []).analyze_session("session_nope") is None
