"""
OpsDesk Agents

Knowledge retrieval and query routing for an IT operations help desk.

Philosophy:
- Every knowledge source is searched through the same connector capability
- Routing is deterministic: identical questions take identical paths
- Answer text is composed externally; this package only prepares context
- Degrade, don't fail: a broken provider or source never breaks an answer

Usage:
    from opsdesk.common import load_config, EmbeddingService
    from opsdesk.retriever import build_context, AgentRouter, QueryClassifier
    from opsdesk.harvester import HarvestJob
"""

__version__ = "0.1.0"
