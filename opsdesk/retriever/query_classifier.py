"""
Query Classifier

Decides whether a question goes to the Generalist path (aggregated retrieval)
or the Specialist path (SAP lookup table). Pure and deterministic: the same
question against the same table always yields the same result.

Rules are evaluated in table order and the first match wins:

1. domain_keyword  - curated SAP vocabulary appears in the question
2. verified_code   - a token with a code shape exists in the lookup table
3. known_code      - any other token exists in the lookup table
4. contextual      - role/position term + access term + a letter/digit token

A code shape on its own is never evidence.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from ..common.schemas import EntityType
from .lookup import LookupTable

logger = logging.getLogger("opsdesk.retriever.query_classifier")


class Route(str, Enum):
    """Answering path for a question"""
    GENERALIST = "generalist"
    SPECIALIST = "specialist"


class QueryType(str, Enum):
    """Shape of a specialist question, used to focus the fact sheet"""
    COMPARE = "compare"
    REVERSE_LOOKUP = "reverse_lookup"
    POSITION_ACCESS = "position_access"
    ROLE_TRANSACTIONS = "role_transactions"
    TRANSACTION_INFO = "transaction_info"
    ROLE_INFO = "role_info"
    POSITION_INFO = "position_info"
    GENERAL = "general"


@dataclass(frozen=True)
class ClassificationRule:
    """One row of the rule table"""
    name: str
    stage: str
    requires_lookup: bool
    confidence: float


@dataclass
class ClassificationResult:
    """Outcome of classifying one question"""
    route: Route
    confidence: float
    evidence: List[str] = field(default_factory=list)
    codes: List[str] = field(default_factory=list)
    rule: str = "default"

    @property
    def is_specialist(self) -> bool:
        return self.route == Route.SPECIALIST

    def to_dict(self) -> dict:
        return {
            "route": self.route.value,
            "confidence": self.confidence,
            "evidence": list(self.evidence),
            "codes": list(self.codes),
            "rule": self.rule,
        }


RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule("domain_keyword", stage="keyword", requires_lookup=False, confidence=0.95),
    ClassificationRule("verified_code", stage="verification", requires_lookup=True, confidence=0.9),
    ClassificationRule("known_code", stage="verification", requires_lookup=True, confidence=0.85),
    ClassificationRule("contextual", stage="context", requires_lookup=False, confidence=0.6),
)

DEFAULT_CONFIDENCE = 0.2

# English + Spanish SAP vocabulary, matched as lower-case substrings.
# "sap" therefore also fires inside "asap" or "disappear".
DOMAIN_KEYWORDS: Tuple[str, ...] = (
    # Spanish
    "transacción", "transacciones", "transaccion", "t-code", "tcode",
    "autorización", "autorizaciones", "autorizacion",
    # English
    "transaction", "transactions", "authorization", "authorizations",
    # SAP specific
    "sap", "sapgui", "sap gui", "fiori",
    # Role/position combined with SAP context
    "rol sap", "role sap", "roles sap", "posición sap", "position sap",
)

SPLIT_CHARS = " \t\r\n,?¿!¡.:;\"'()"
# A dot between two letters or digits belongs to the code (SD05.JI)
_SPLIT_RE = re.compile(
    "[" + re.escape(SPLIT_CHARS.replace(".", "")) + "]+|(?<![A-Za-z0-9])\\.|\\.(?![A-Za-z0-9])"
)
_TOKEN_RE = re.compile(r"^[A-Z0-9_]+(\.[A-Z]+)?$")

STOP_WORDS = {
    "SAP", "THE", "FOR", "AND", "QUE", "DEL", "LOS", "LAS", "UNA", "UNO",
    "PARA", "CON", "POR", "SIN", "COMO", "TIENE", "ROLE", "ROLES",
    "WHAT", "WHICH", "DOES", "HOW", "WHO", "HAS", "HAVE", "NEED", "WITH",
    "CUAL", "QUIEN", "TENGO", "HAY", "ROL", "ES", "EL", "LA", "DE", "EN",
    "IS", "IN", "OF", "TO", "OR", "IT",
}

SHAPE_PATTERNS = {
    EntityType.TRANSACTION: [
        re.compile(r"^[A-Z]{2}\d{2}$"),         # SM35, MM01
        re.compile(r"^[A-Z]{2}\d{2}[A-Z]$"),    # SM35X
        re.compile(r"^[A-Z]{3,4}\d{0,2}$"),     # FQUS, SCMA, SBWP
        re.compile(r"^SO\d{2}[A-Z]?$"),         # SO01, SO02X
        re.compile(r"^S[A-Z]\d{2}$"),           # SU01, SP02
    ],
    EntityType.ROLE: [
        re.compile(r"^[A-Z]{2}\d{2}$"),           # SY01
        re.compile(r"^[A-Z]{2}\d{2}\.[A-Z]+$"),   # SD05.JI
    ],
    EntityType.POSITION: [
        re.compile(r"^[A-Z]{4}\d{2}$"),  # INCA01
    ],
}

_ROLE_TERMS_RE = re.compile(r"\b(rol|role|roles|posición|posicion|position|puesto)\b")
_ACCESS_TERMS_RE = re.compile(r"(acceso|access|permiso|permission)")

_COMPARE_TERMS = ("diferencia", "difference", "comparar", "compare", "vs", " o ", " or ")
_REVERSE_TERMS = (
    "qué rol", "que rol", "which role", "what role",
    "quién tiene", "quien tiene", "qué posición", "que posición", "which position",
)
_ACCESS_TERMS = ("acceso", "access", "necesita", "need", "permisos de", "permissions")
_POSITION_TERMS = ("position", "posición", "puesto", "cargo")
_TRANSACTION_LIST_TERMS = ("transacciones", "transactions", "t-codes", "tcodes")
_TRANSACTION_TERMS = (
    "transacción", "transaction", "t-code", "tcode",
    "qué es", "what is", "para qué sirve", "what does",
)


def split_words(text: str) -> List[str]:
    return [w for w in _SPLIT_RE.split(text or "") if w]


def extract_tokens(text: str) -> List[str]:
    """Upper-cased candidate code tokens, deduplicated in order of appearance"""
    tokens: List[str] = []
    for word in split_words(text):
        token = word.strip().upper()
        if not 2 <= len(token) <= 8:
            continue
        if not _TOKEN_RE.match(token) or token in STOP_WORDS:
            continue
        if token not in tokens:
            tokens.append(token)
    return tokens


def code_shapes(token: str) -> List[EntityType]:
    """Entity types whose code pattern the token matches"""
    return [
        entity_type
        for entity_type, patterns in SHAPE_PATTERNS.items()
        if any(p.match(token) for p in patterns)
    ]


def _mixed_code_words(text: str) -> List[str]:
    """Words typed in upper case that mix letters and digits"""
    found = []
    for word in split_words(text):
        if not 2 <= len(word) <= 8 or word.upper() != word:
            continue
        if any(c.isalpha() for c in word) and any(c.isdigit() for c in word) and word not in found:
            found.append(word)
    return found


class QueryClassifier:
    """
    Ordered rule table over a lookup table.

    A missing or failing lookup table disables the verification stage;
    classification itself never raises.
    """

    def __init__(self, lookup: Optional[LookupTable] = None, rules: Tuple[ClassificationRule, ...] = RULES):
        self._lookup = lookup
        self._rules = rules

    @property
    def lookup(self) -> Optional[LookupTable]:
        return self._lookup

    def _lookup_usable(self) -> bool:
        return self._lookup is not None and self._lookup.is_available

    def _verify(self, tokens: List[str]) -> Tuple[List[str], List[str]]:
        """Split tokens found in the lookup into (shape-matched, shapeless)"""
        if not self._lookup_usable():
            logger.debug("Lookup table unavailable, code verification disabled")
            return [], []

        verified: List[str] = []
        known: List[str] = []
        try:
            for token in tokens:
                if not self._lookup.contains(token):
                    continue
                if code_shapes(token):
                    verified.append(token)
                else:
                    known.append(token)
        except Exception as e:
            logger.warning("Lookup verification failed, skipping: %s", e)
            return [], []
        return verified, known

    def classify(self, question: str) -> ClassificationResult:
        """
        Classify a question.

        Returns:
            ClassificationResult; evidence is matched keywords followed by
            lookup-confirmed codes
        """
        text = question or ""
        lower = text.lower()

        keywords = [k for k in DOMAIN_KEYWORDS if k in lower]
        tokens = extract_tokens(text)
        verified, known = self._verify(tokens)
        codes = [t for t in tokens if t in verified or t in known]

        matched = {
            "domain_keyword": bool(keywords),
            "verified_code": bool(verified),
            "known_code": bool(known),
            "contextual": (
                bool(_ROLE_TERMS_RE.search(lower))
                and bool(_ACCESS_TERMS_RE.search(lower))
                and bool(_mixed_code_words(text))
            ),
        }

        for rule in self._rules:
            if rule.requires_lookup and not self._lookup_usable():
                continue
            if not matched.get(rule.name):
                continue

            evidence = keywords + codes
            if rule.name == "contextual":
                evidence = evidence + [w for w in _mixed_code_words(text) if w not in evidence]
            return ClassificationResult(
                route=Route.SPECIALIST,
                confidence=rule.confidence,
                evidence=evidence,
                codes=codes,
                rule=rule.name,
            )

        return ClassificationResult(
            route=Route.GENERALIST,
            confidence=DEFAULT_CONFIDENCE,
            evidence=[],
            codes=[],
            rule="default",
        )

    def _has_code_of_type(self, codes: List[str], entity_type: EntityType) -> bool:
        if not self._lookup_usable():
            return False
        return any(self._lookup.get_entity(c, entity_type) is not None for c in codes)

    def detect_query_type(self, question: str, codes: List[str]) -> QueryType:
        """Narrow a specialist question to the kind of answer it wants"""
        lower = (question or "").lower()
        padded = f" {lower} "

        if any(t in padded for t in _COMPARE_TERMS) and len(codes) >= 2:
            return QueryType.COMPARE

        if any(t in lower for t in _REVERSE_TERMS):
            return QueryType.REVERSE_LOOKUP

        if any(t in lower for t in _ACCESS_TERMS):
            if any(t in lower for t in _POSITION_TERMS) or self._has_code_of_type(codes, EntityType.POSITION):
                return QueryType.POSITION_ACCESS

        if any(t in lower for t in _TRANSACTION_LIST_TERMS) and (
            re.search(r"\b(rol|role|roles)\b", lower) or self._has_code_of_type(codes, EntityType.ROLE)
        ):
            return QueryType.ROLE_TRANSACTIONS

        if any(t in lower for t in _TRANSACTION_TERMS) and self._has_code_of_type(codes, EntityType.TRANSACTION):
            return QueryType.TRANSACTION_INFO

        if re.search(r"\b(rol|role|roles)\b", lower) and self._has_code_of_type(codes, EntityType.ROLE):
            return QueryType.ROLE_INFO

        if any(t in lower for t in _POSITION_TERMS) and self._has_code_of_type(codes, EntityType.POSITION):
            return QueryType.POSITION_INFO

        for code in codes:
            for entity_type, query_type in (
                (EntityType.TRANSACTION, QueryType.TRANSACTION_INFO),
                (EntityType.ROLE, QueryType.ROLE_INFO),
                (EntityType.POSITION, QueryType.POSITION_INFO),
            ):
                if self._has_code_of_type([code], entity_type):
                    return query_type

        return QueryType.GENERAL
