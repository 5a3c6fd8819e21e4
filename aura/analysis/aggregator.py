"""Cross-session aggregation of per-session analyses."""

from collections import Counter
from typing import Dict, List, Optional
import structlog

from ..config.settings import AnalysisSettings
from ..state.models import (
    AggregateAnalysis,
    Provenance,
    Sentiment,
    SentimentTrend,
    Session,
    SessionProgress,
    ThemeEvolution,
    ThemeFrequency,
    ThemePoint,
    utcnow,
)


logger = structlog.get_logger()


def _capitalize(text: str) -> str:
    return text[:1].upper() + text[1:]


class AnalysisAggregator:
    """
    Derives an ``AggregateAnalysis`` from a user's analyzed sessions.

    Synthetic analyses are left out unless explicitly requested, and the
    result's provenance says which kinds went in.
    """

    def __init__(self, config: Optional[AnalysisSettings] = None):
        self.config = config or AnalysisSettings()

    def aggregate(self, sessions: List[Session], include_synthetic: bool = False) -> AggregateAnalysis:
        analyzed = [s for s in sessions if s.analysis is not None]
        synthetic = [s for s in analyzed if s.analysis.provenance == Provenance.SYNTHETIC]
        excluded = 0 if include_synthetic else len(synthetic)
        if not include_synthetic:
            analyzed = [s for s in analyzed if s.analysis.provenance != Provenance.SYNTHETIC]

        if not analyzed:
            return AggregateAnalysis(excluded_synthetic=excluded)

        ordered = sorted(analyzed, key=lambda s: s.started_at)
        count = len(ordered)

        overall = Sentiment(
            positive=round(sum(s.analysis.sentiment.positive for s in ordered) / count, 2),
            neutral=round(sum(s.analysis.sentiment.neutral for s in ordered) / count, 2),
            negative=round(sum(s.analysis.sentiment.negative for s in ordered) / count, 2),
        )

        theme_counts: Dict[str, int] = {}
        theme_strengths: Dict[str, float] = {}
        for session in ordered:
            for theme in session.analysis.themes:
                key = theme.name.strip().lower()
                theme_counts[key] = theme_counts.get(key, 0) + 1
                theme_strengths[key] = theme_strengths.get(key, 0.0) + theme.strength

        common_themes = sorted(
            (
                ThemeFrequency(
                    name=_capitalize(key),
                    frequency=theme_counts[key],
                    average_strength=round(theme_strengths[key] / theme_counts[key], 2),
                )
                for key in theme_counts
            ),
            key=lambda t: (-t.frequency, -t.average_strength),
        )[: self.config.top_themes]

        result = AggregateAnalysis(
            overall_sentiment=overall,
            common_themes=common_themes,
            progress=SessionProgress(
                sessions=count,
                sentiment_trend=self.sentiment_trend([s.analysis.sentiment.positive for s in ordered]),
                average_session_length=self._average_length_minutes(ordered),
            ),
            top_recommendations=self._top_recommendations(ordered),
            theme_evolution=self._theme_evolution(ordered, theme_counts),
            provenance=self._provenance(ordered),
            excluded_synthetic=excluded,
            last_updated=utcnow(),
        )
        logger.debug("Aggregate analysis computed", sessions=count,
                     trend=result.progress.sentiment_trend.value,
                     provenance=result.provenance.value)
        return result

    def sentiment_trend(self, positives: List[float]) -> SentimentTrend:
        """Classify the positive share of the first and last session, oldest first."""
        if len(positives) < 2:
            return SentimentTrend.STEADY

        threshold = self.config.trend_threshold
        # rounded so that decimal inputs such as 0.6 - 0.35 compare as written
        difference = round(positives[-1] - positives[0], 6)
        if difference > threshold:
            return SentimentTrend.IMPROVING
        if difference < -threshold:
            return SentimentTrend.DECLINING

        spread = round(max(positives) - min(positives), 6)
        if spread >= self.config.mixed_spread_threshold:
            return SentimentTrend.MIXED
        return SentimentTrend.STEADY

    def _average_length_minutes(self, sessions: List[Session]) -> float:
        total = sum(s.duration_seconds / 60 for s in sessions if s.duration_seconds is not None)
        return round(total / len(sessions), 1)

    def _top_recommendations(self, sessions: List[Session]) -> List[str]:
        counts: Counter = Counter()
        for session in sessions:
            for recommendation in session.analysis.recommendations:
                normalized = recommendation.strip().lower()
                if normalized:
                    counts[normalized] += 1
        return [_capitalize(r) for r, _ in counts.most_common(self.config.top_recommendations)]

    def _theme_evolution(self, sessions: List[Session], theme_counts: Dict[str, int]) -> List[ThemeEvolution]:
        if len(sessions) < 2:
            return []

        recurrent = [k for k, c in theme_counts.items() if c >= self.config.evolution_min_sessions]
        evolutions = []
        for key in recurrent:
            points = []
            for index, session in enumerate(sessions):
                strength = next(
                    (t.strength for t in session.analysis.themes if t.name.strip().lower() == key),
                    0.0,
                )
                points.append(ThemePoint(
                    session_index=index,
                    strength=strength,
                    date=session.started_at.date().isoformat(),
                ))
            evolution = ThemeEvolution(name=_capitalize(key), evolution=points)
            if evolution.occurrences > 0:
                evolutions.append(evolution)

        evolutions.sort(key=lambda e: -e.occurrences)
        return evolutions[: self.config.evolution_max_themes]

    def _provenance(self, sessions: List[Session]) -> Provenance:
        kinds = {s.analysis.provenance for s in sessions}
        if kinds == {Provenance.LLM}:
            return Provenance.LLM
        if kinds == {Provenance.SYNTHETIC}:
            return Provenance.SYNTHETIC
        return Provenance.MIXED
