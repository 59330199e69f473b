"""Shared fixtures: a keyword-bag embedder, fake LLMs and a small SAP table."""

import pytest

from opsdesk.common.errors import ProviderError
from opsdesk.common.schemas import KnowledgeItem

VOCAB = ["vpn", "sap", "printer", "password", "network", "toner", "access", "laptop"]


class FakeEmbedder:
    """Counts vocabulary words; the last dimension is a constant bias"""

    def __init__(self, model="fake-model", fail_on=(), fail_all=False, extra_dims=0):
        self.model = model
        self.fail_on = set(fail_on)
        self.fail_all = fail_all
        self.extra_dims = extra_dims
        self.calls = []

    async def embed_single(self, text):
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")
        self.calls.append(text)
        lower = text.lower()
        if self.fail_all or any(f in lower for f in self.fail_on):
            raise ProviderError("embedding backend down")
        vector = [float(lower.count(w)) for w in VOCAB]
        vector.append(0.1)
        vector.extend([0.0] * self.extra_dims)
        return vector


class FakeLLM:
    """Stands in for LLMClient"""

    def __init__(self, answer="Generated answer", chunks=("Hello ", "world"), fail=False, fail_after=None):
        self.answer = answer
        self.chunks = list(chunks)
        self.fail = fail
        self.fail_after = fail_after
        self.prompts = []
        self.systems = []
        self.histories = []
        self.hang = None

    @property
    def is_available(self):
        return True

    async def generate(self, prompt, *, system=None, history=None, max_tokens=1024, timeout=30.0):
        self.prompts.append(prompt)
        self.systems.append(system)
        self.histories.append(history)
        if self.fail:
            raise ProviderError("openai generation failed: rate limited")
        return self.answer

    async def stream(self, prompt, *, system=None, history=None, max_tokens=1024, timeout=60.0):
        self.prompts.append(prompt)
        self.systems.append(system)
        self.histories.append(history)
        if self.fail:
            raise ProviderError("openai streaming failed: rate limited")
        for i, chunk in enumerate(self.chunks):
            if self.fail_after is not None and i >= self.fail_after:
                raise ProviderError("openai streaming failed: connection reset")
            yield chunk
            if self.hang is not None:
                await self.hang.wait()


def make_item(item_id, title, text="", **kwargs):
    return KnowledgeItem(id=item_id, title=title, text=text, **kwargs)


LOOKUP_DATA = {
    "transactions": [
        {"code": "SU01", "description": "User maintenance"},
        {"code": "SM35", "description": "Batch input monitoring"},
        {"code": "MM01", "description": "Create material"},
        {"code": "FB01", "description": "Post document"},
    ],
    "roles": [
        {
            "code": "SY01",
            "description": "System administration",
            "full_name": "Basis system administrator",
            "transactions": ["SU01", "SM35"],
        },
        {
            "code": "MM02",
            "description": "Materials management",
            "full_name": "Materials clerk",
            "transactions": ["MM01", "SM35"],
        },
    ],
    "positions": [
        {"code": "INCA01", "description": "IT administrator", "roles": ["SY01"]},
        {"code": "LOGI01", "description": "Warehouse clerk", "roles": ["MM02"]},
    ],
}


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def lookup():
    from opsdesk.retriever.lookup import LookupTable
    return LookupTable.from_dict(LOOKUP_DATA)


@pytest.fixture
def sample_items():
    return [
        make_item(
            "KB-1", "VPN connection drops",
            "If the VPN disconnects, reinstall the VPN client and check the network.",
            tags=["vpn", "network"],
        ),
        make_item(
            "KB-2", "SAP GUI login",
            "Reset your SAP password through the SAP self-service portal.",
            tags=["sap"],
        ),
        make_item(
            "KB-3", "Printer out of toner",
            "Replace the printer toner cartridge or open a printer ticket.",
            tags=["printer"],
        ),
    ]


def make_context(items, lookup=None, embedder=None, **settings):
    """KnowledgeContext with one in-memory article source"""
    from opsdesk.common.config import RetrieverConfig
    from opsdesk.retriever.connector import CollectionConnector
    from opsdesk.retriever.context import KnowledgeContext
    from opsdesk.retriever.lookup import LookupTable
    from opsdesk.retriever.stores import InMemoryStore

    embedder = embedder or FakeEmbedder()
    connector = CollectionConnector("articles", InMemoryStore(items), embedder, max_retries=0)
    return KnowledgeContext(
        connectors={"articles": connector},
        lookup=lookup if lookup is not None else LookupTable.unavailable(),
        embedding_service=embedder,
        priority=["articles"],
        settings=RetrieverConfig(**settings),
    )
