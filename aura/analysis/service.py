"""Analysis of stored sessions with fallback to synthetic results."""

from typing import List, Optional
import structlog

from ..providers.chain import FallbackChain, Tier
from ..state.models import AggregateAnalysis, Session, SessionAnalysis
from ..state.session_store import SessionStore
from .aggregator import AnalysisAggregator
from .analyzer import SessionAnalyzer, SyntheticSessionAnalyzer


logger = structlog.get_logger()


class AnalysisService:
    """Analyzes sessions (LLM first, synthetic last) and aggregates across them."""

    def __init__(
        self,
        store: SessionStore,
        analyzers: List[SessionAnalyzer],
        aggregator: Optional[AnalysisAggregator] = None,
        synthetic: Optional[SessionAnalyzer] = None,
        metrics=None,
    ):
        self.store = store
        self.aggregator = aggregator or AnalysisAggregator()
        self.synthetic = synthetic or SyntheticSessionAnalyzer()
        tiers = [Tier(a.name, a.analyze) for a in analyzers]
        tiers.append(Tier(self.synthetic.name, self.synthetic.analyze))
        self.chain = FallbackChain("analysis", tiers, metrics=metrics)

    async def analyze(self, session: Session) -> SessionAnalysis:
        result = await self.chain.run(session)
        return result.value

    def needs_analysis(self, session: Session) -> bool:
        """Sessions without an analysis, or with messages newer than it."""
        if session.analysis is None:
            return bool(session.conversation)
        if not session.conversation:
            return False
        return session.conversation[-1].timestamp > session.analysis.last_updated

    async def analyze_session(self, session_id: str) -> Optional[Session]:
        """Analyze one stored session and persist the result."""
        session = self.store.get(session_id)
        if session is None:
            logger.warning("Cannot analyze unknown session", session_id=session_id)
            return None
        analysis = await self.analyze(session)
        return self.store.save_analysis(session_id, analysis)

    async def refresh(
        self,
        user_id: Optional[str] = None,
        force: bool = False,
        include_synthetic: bool = False,
    ) -> AggregateAnalysis:
        """Analyze stale sessions of a user, then aggregate all of them."""
        sessions = self.store.list_by_user(user_id)
        refreshed = 0
        for session in sessions:
            if (force and session.conversation) or self.needs_analysis(session):
                await self.analyze_session(session.id)
                refreshed += 1

        if refreshed:
            logger.info("Sessions analyzed", count=refreshed)
            sessions = self.store.list_by_user(user_id)
        return self.aggregator.aggregate(sessions, include_synthetic=include_synthetic)

    def aggregate(self, user_id: Optional[str] = None, include_synthetic: bool = False) -> AggregateAnalysis:
        """Aggregate the stored analyses without running any analyzer."""
        return self.aggregator.aggregate(self.store.list_by_user(user_id), include_synthetic=include_synthetic)
