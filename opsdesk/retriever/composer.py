"""
Answer Composer

Turns ranked retrieval results or a specialist fact sheet into an answer
using the configured LLM. Without an LLM it falls back to a formatted
listing of the context, flagged with a warning.

LLM failures are not hidden here: ProviderError propagates so the router
can answer with an explicit failure.
"""

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional

from ..common.llm_client import LLMClient
from .connector import SearchResult
from .fact_sheet import FactSheet

logger = logging.getLogger("opsdesk.retriever.composer")

CONTENT_LIMIT = 2000


@dataclass
class ComposedAnswer:
    """Composer output"""
    answer: str
    warnings: List[str] = field(default_factory=list)
    used_llm: bool = False


GENERAL_SYSTEM_PROMPT = """You are a helpful IT Operations assistant for the company's internal Knowledge Base and ServiceDesk.
Your role is to help employees find information, answer questions, and guide them to the right resources.

Guidelines:
- Answer questions accurately based on the provided context from the Knowledge Base and reference data
- If a ServiceDesk ticket category is relevant, provide the direct link to create a ticket
- If the information is not available in the context, say so clearly
- Be concise but complete in your answers
- If a procedure has steps, list them clearly
- Reference the source item id when relevant
- If multiple items are relevant, synthesize the information
- Be professional and helpful

If you cannot find relevant information, suggest the user contact the IT Help Desk or search for related topics."""

SPECIALIST_SYSTEM_PROMPT = """You are an SAP expert on the IT Operations team.

You help employees with:
- SAP transactions (T-codes)
- Roles and authorizations
- Positions and their access
- Permissions needed for specific tasks

You are given structured data about transactions, technical roles, positions and
which transactions each role grants and which roles each position holds.

Rules:
1. Be precise with codes.
2. Only use the data provided. If something is missing, say so.
3. Use tables for listings of more than 5 transactions and for comparisons.
4. If the user needs access they do not have, suggest opening an SAP access ticket."""

GENERAL_USER_PROMPT = """Context from Knowledge Base and Reference Data:
{context}

User Question: {question}

Please answer based on the context provided above. If there's a relevant ticket category or URL, include it in your response."""

SPECIALIST_USER_PROMPT = """## Relevant SAP data
{fact_sheet}

User Question: {question}

Please answer based on the SAP data provided above."""

LANGUAGE_INSTRUCTIONS = {
    "en": "Respond in English.",
    "es": "IMPORTANT: The user wrote in Spanish. Respond in Spanish.",
}

FALLBACK_TEMPLATES = {
    "en": """## Results for: "{question}"

Found {count} relevant item(s):

{formatted}

---
**Note**: This is a direct listing without LLM synthesis.
""",
    "es": """## Resultados para: "{question}"

Se encontraron {count} elemento(s) relevantes:

{formatted}

---
**Nota**: Este es un listado directo sin síntesis de LLM.
""",
}

NO_RESULTS = {
    "en": "No relevant information was found in the Knowledge Base. Please contact the IT Help Desk.",
    "es": "No se encontró información relevante en la base de conocimiento. Por favor, contacta con el Help Desk de IT.",
}

SPECIALIST_FALLBACK_HEADER = {
    "en": "## SAP data",
    "es": "## Datos SAP",
}


def format_context(results: List[SearchResult]) -> str:
    """Render ranked results for the prompt, grouped by source"""
    if not results:
        return "No relevant information found in the Knowledge Base or reference data."

    sections: Dict[str, List[str]] = {}
    for r in results:
        item = r.item
        lines = [f"--- [{r.source}:{item.id}] {item.title} (score {r.score:.2f}) ---"]
        if item.summary:
            lines.append(f"Summary: {item.summary}")
        purpose = item.metadata.get("purpose")
        if purpose:
            lines.append(f"Purpose: {purpose}")
        category = item.metadata.get("category")
        if category:
            lines.append(f"Category: {category}")
        if item.text:
            content = item.text
            if len(content) > CONTENT_LIMIT:
                content = content[:CONTENT_LIMIT] + "..."
            lines.append(f"Content: {content}")
        if item.url:
            lines.append(f"URL/Link: {item.url}")
        sections.setdefault(r.source, []).append("\n".join(lines))

    parts = []
    for source, entries in sections.items():
        parts.append(f"=== {source.upper()} ===")
        parts.extend(entries)
        parts.append("")
    return "\n".join(parts).strip()


class AnswerComposer:
    """LLM answer composition with a listing fallback"""

    def __init__(self, llm: Optional[LLMClient] = None, max_tokens: int = 1024):
        self._llm = llm
        self._max_tokens = max_tokens

    @property
    def has_llm(self) -> bool:
        return self._llm is not None and self._llm.is_available

    def _system(self, base: str, language: str) -> str:
        return f"{base}\n\n{LANGUAGE_INSTRUCTIONS.get(language, LANGUAGE_INSTRUCTIONS['en'])}"

    def _fallback_listing(self, question: str, results: List[SearchResult], language: str) -> str:
        if not results:
            return NO_RESULTS.get(language, NO_RESULTS["en"])
        formatted = []
        for i, r in enumerate(results[:5], 1):
            body = r.item.summary or r.item.text
            if len(body) > 500:
                body = body[:500] + "..."
            line = f"### {i}. {r.item.title} [{r.source}:{r.item.id}]\n**Score**: {r.score:.2f}\n\n{body}"
            if r.item.url:
                line += f"\n\n{r.item.url}"
            formatted.append(line)
        template = FALLBACK_TEMPLATES.get(language, FALLBACK_TEMPLATES["en"])
        return template.format(question=question, count=len(results), formatted="\n\n".join(formatted))

    async def compose(
        self,
        question: str,
        results: List[SearchResult],
        history: Optional[List[dict]] = None,
        language: str = "en",
    ) -> ComposedAnswer:
        """
        Answer a generalist question from ranked results.

        Raises:
            ProviderError: the LLM call failed
        """
        if not self.has_llm:
            return ComposedAnswer(
                answer=self._fallback_listing(question, results, language),
                warnings=["LLM not available - showing raw results"],
            )

        prompt = GENERAL_USER_PROMPT.format(context=format_context(results), question=question)
        answer = await self._llm.generate(
            prompt,
            system=self._system(GENERAL_SYSTEM_PROMPT, language),
            history=history,
            max_tokens=self._max_tokens,
        )
        warnings = [] if results else ["No relevant results found"]
        return ComposedAnswer(answer=answer, warnings=warnings, used_llm=True)

    async def stream(
        self,
        question: str,
        results: List[SearchResult],
        history: Optional[List[dict]] = None,
        language: str = "en",
    ) -> AsyncIterator[str]:
        """Yield answer fragments; the fallback listing is a single fragment"""
        if not self.has_llm:
            yield self._fallback_listing(question, results, language)
            return

        prompt = GENERAL_USER_PROMPT.format(context=format_context(results), question=question)
        async for fragment in self._llm.stream(
            prompt,
            system=self._system(GENERAL_SYSTEM_PROMPT, language),
            history=history,
            max_tokens=self._max_tokens,
        ):
            yield fragment

    async def compose_specialist(
        self,
        question: str,
        fact_sheet: FactSheet,
        language: str = "en",
    ) -> ComposedAnswer:
        """
        Answer a specialist question from a fact sheet.

        Raises:
            ProviderError: the LLM call failed
        """
        if not self.has_llm:
            header = SPECIALIST_FALLBACK_HEADER.get(language, SPECIALIST_FALLBACK_HEADER["en"])
            return ComposedAnswer(
                answer=f"{header}\n\n{fact_sheet.text}",
                warnings=["LLM not available - showing raw lookup data"],
            )

        prompt = SPECIALIST_USER_PROMPT.format(fact_sheet=fact_sheet.text, question=question)
        answer = await self._llm.generate(
            prompt,
            system=self._system(SPECIALIST_SYSTEM_PROMPT, language),
            max_tokens=self._max_tokens,
        )
        warnings = [] if fact_sheet.found else ["No matching SAP entities found"]
        return ComposedAnswer(answer=answer, warnings=warnings, used_llm=True)
