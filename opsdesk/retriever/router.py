"""
Agent Router

Entry point for questions. Classifies each question, then answers it from
the specialist lookup table or from aggregated retrieval, and always returns
a structured response. Only caller cancellation escapes.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from ..common.errors import LookupUnavailable, ProviderError
from ..common.language import detect_language
from .composer import AnswerComposer, ComposedAnswer
from .connector import SearchResult
from .context import KnowledgeContext
from .fact_sheet import build_fact_sheet
from .query_classifier import ClassificationResult, QueryClassifier, Route
from .streaming import AnswerStream

logger = logging.getLogger("opsdesk.retriever.router")

LOOKUP_SOURCE = "sap_lookup"

FAILURE_MESSAGES = {
    "en": "I'm sorry, I encountered an error while processing your question. Please try again or contact the IT Help Desk.",
    "es": "Lo siento, ocurrió un error al procesar tu consulta. Por favor, intenta de nuevo o contacta al equipo de IT.",
}

LOOKUP_UNAVAILABLE_MESSAGES = {
    "en": "Sorry, the SAP knowledge service is not available right now. Please try again later or contact the IT team.",
    "es": "Lo siento, el servicio de conocimiento SAP no está disponible en este momento. Por favor, intenta más tarde o contacta al equipo de IT.",
}


@dataclass
class CitedSource:
    """Reference to an item an answer was built from"""
    source: str
    item_id: str
    title: str
    score: float
    url: Optional[str] = None

    @classmethod
    def from_result(cls, result: SearchResult) -> "CitedSource":
        return cls(
            source=result.source,
            item_id=result.item_id,
            title=result.title,
            score=round(result.score, 4),
            url=result.item.url,
        )


@dataclass
class AgentResponse:
    """Structured answer returned by AgentRouter.ask"""
    answer: str
    success: bool
    cited_sources: List[CitedSource] = field(default_factory=list)
    route: Optional[Route] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    classification: Optional[ClassificationResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "answer": self.answer,
            "success": self.success,
            "cited_sources": [asdict(c) for c in self.cited_sources],
            "route": self.route.value if self.route else None,
            "error": self.error,
            "warnings": list(self.warnings),
            "classification": self.classification.to_dict() if self.classification else None,
        }


def _message(table: Dict[str, str], language: str) -> str:
    return table.get(language, table["en"])


def _failure_message(error: BaseException, language: str) -> str:
    table = LOOKUP_UNAVAILABLE_MESSAGES if isinstance(error, LookupUnavailable) else FAILURE_MESSAGES
    return _message(table, language)


def _preview(question: str) -> str:
    return question if len(question) <= 50 else question[:50] + "..."


class AgentRouter:
    """
    Routes questions between the Generalist and Specialist paths.

    Pipeline:
    1. Detect answer language (en/es)
    2. Classify the question
    3. Specialist: lookup -> fact sheet -> composer
       Generalist: aggregated search -> composer
    """

    def __init__(
        self,
        context: KnowledgeContext,
        classifier: Optional[QueryClassifier] = None,
        composer: Optional[AnswerComposer] = None,
    ):
        self._context = context
        self._classifier = classifier or QueryClassifier(context.lookup)
        self._composer = composer or AnswerComposer()

    @property
    def context(self) -> KnowledgeContext:
        return self._context

    @property
    def classifier(self) -> QueryClassifier:
        return self._classifier

    def classify(self, question: str) -> ClassificationResult:
        return self._classifier.classify(question)

    def _trim_history(self, history: Optional[List[dict]]) -> List[dict]:
        if not history:
            return []
        turns = self._context.settings.history_turns
        return list(history[-turns:]) if turns > 0 else []

    async def _retrieve(self, question: str) -> List[SearchResult]:
        settings = self._context.settings
        return await self._context.aggregator.search_all(
            question,
            per_source_k=settings.per_source_k,
            total_cap=settings.total_cap,
        )

    async def _answer_specialist(
        self,
        question: str,
        classification: ClassificationResult,
        language: str,
    ) -> AgentResponse:
        lookup = self._context.lookup
        if lookup is None or not lookup.is_available:
            raise LookupUnavailable("Specialist lookup table is not loaded")

        query_type = self._classifier.detect_query_type(question, classification.codes)
        sheet = build_fact_sheet(lookup, classification.codes, query_type)
        logger.info(
            "Specialist query: type=%s, found=%d entities, missing=%s",
            query_type.value, len(sheet.entities), sheet.missing,
        )

        composed = await self._composer.compose_specialist(question, sheet, language)
        cited = [
            CitedSource(
                source=LOOKUP_SOURCE,
                item_id=entity.code,
                title=entity.description or entity.full_name,
                score=1.0,
            )
            for entity in sheet.entities
        ]
        return self._success(composed, cited, classification)

    async def _answer_generalist(
        self,
        question: str,
        classification: ClassificationResult,
        history: List[dict],
        language: str,
    ) -> AgentResponse:
        results = await self._retrieve(question)
        composed = await self._composer.compose(question, results, history, language)
        cited = [CitedSource.from_result(r) for r in results]
        return self._success(composed, cited, classification)

    def _success(
        self,
        composed: ComposedAnswer,
        cited: List[CitedSource],
        classification: ClassificationResult,
    ) -> AgentResponse:
        return AgentResponse(
            answer=composed.answer,
            success=True,
            cited_sources=cited,
            route=classification.route,
            warnings=list(composed.warnings),
            classification=classification,
        )

    def _failure(self, error: Exception, classification: ClassificationResult, language: str) -> AgentResponse:
        return AgentResponse(
            answer=_failure_message(error, language),
            success=False,
            route=classification.route,
            error=str(error) or type(error).__name__,
            classification=classification,
        )

    async def ask(self, question: str, history: Optional[List[dict]] = None) -> AgentResponse:
        """
        Answer a question.

        Never raises for internal failures: they produce success=False with a
        safe message in the user's language. asyncio.CancelledError propagates.
        """
        start = time.monotonic()
        language = detect_language(question).code
        classification = self._classifier.classify(question)

        try:
            if classification.route == Route.SPECIALIST:
                response = await self._answer_specialist(question, classification, language)
            else:
                response = await self._answer_generalist(
                    question, classification, self._trim_history(history), language
                )
        except asyncio.CancelledError:
            raise
        except (LookupUnavailable, ProviderError) as e:
            logger.warning("Answer failed on %s path: %s", classification.route.value, e)
            response = self._failure(e, classification, language)
        except Exception as e:
            logger.error("Unexpected error answering '%s'", _preview(question), exc_info=True)
            response = self._failure(e, classification, language)

        logger.info(
            "Query routed: route=%s rule=%s evidence=%s success=%s elapsed=%.0fms question='%s'",
            classification.route.value,
            classification.rule,
            classification.evidence,
            response.success,
            (time.monotonic() - start) * 1000,
            _preview(question),
        )
        return response

    def ask_streaming(self, question: str, history: Optional[List[dict]] = None) -> AnswerStream:
        """
        Answer a question incrementally.

        Generalist answers stream from the composer. Specialist answers are
        computed in full and emitted as a single fragment.
        """
        language = detect_language(question).code
        classification = self._classifier.classify(question)
        trimmed = self._trim_history(history)

        async def fragments() -> AsyncIterator[str]:
            start = time.monotonic()
            try:
                if classification.route == Route.SPECIALIST:
                    response = await self._answer_specialist(question, classification, language)
                    stream.cited_sources = response.cited_sources
                    stream.warnings = response.warnings
                    yield response.answer
                else:
                    results = await self._retrieve(question)
                    stream.cited_sources = [CitedSource.from_result(r) for r in results]
                    if not self._composer.has_llm:
                        stream.warnings = ["LLM not available - showing raw results"]
                    async for fragment in self._composer.stream(question, results, trimmed, language):
                        yield fragment
            finally:
                logger.info(
                    "Streamed query: route=%s rule=%s evidence=%s elapsed=%.0fms",
                    classification.route.value,
                    classification.rule,
                    classification.evidence,
                    (time.monotonic() - start) * 1000,
                )

        stream = AnswerStream(fragments, fallback_message=lambda error: _failure_message(error, language))
        stream.route = classification.route
        stream.classification = classification
        return stream
