"""
Specialist Lookup Table

In-memory index of SAP transactions, roles and positions loaded from a JSON
file. Codes are matched case-insensitively. The same code may exist under
more than one entity type (a transaction and a role can share a code), so
entities are indexed per type.

File format::

    {
      "transactions": [{"code": "SU01", "description": "User maintenance"}],
      "roles": [{"code": "SY01", "description": "...", "full_name": "...",
                 "transactions": ["SU01", "SM35"]}],
      "positions": [{"code": "INCA01", "description": "...", "roles": ["SY01"]}]
    }
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from ..common.errors import LookupUnavailable
from ..common.schemas import EntityType, LookupEntity, Relation

logger = logging.getLogger("opsdesk.retriever.lookup")

_TYPE_ORDER = (EntityType.TRANSACTION, EntityType.ROLE, EntityType.POSITION)

_SECTIONS = {
    "transactions": (EntityType.TRANSACTION, None),
    "roles": (EntityType.ROLE, Relation.TRANSACTIONS),
    "positions": (EntityType.POSITION, Relation.ROLES),
}


@dataclass
class LookupResult:
    """Entities resolved for a set of codes"""
    transactions: List[LookupEntity] = field(default_factory=list)
    roles: List[LookupEntity] = field(default_factory=list)
    positions: List[LookupEntity] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return bool(self.transactions or self.roles or self.positions)

    def by_type(self, entity_type: EntityType) -> List[LookupEntity]:
        return {
            EntityType.TRANSACTION: self.transactions,
            EntityType.ROLE: self.roles,
            EntityType.POSITION: self.positions,
        }[entity_type]

    def summary(self) -> str:
        return (
            f"{len(self.transactions)} transactions, {len(self.roles)} roles, "
            f"{len(self.positions)} positions, {len(self.missing)} missing"
        )


class LookupTable:
    """Exact-match specialist entity index"""

    def __init__(self, entities: Iterable[LookupEntity] = (), available: bool = True):
        self._index: Dict[EntityType, Dict[str, LookupEntity]] = {t: {} for t in _TYPE_ORDER}
        for entity in entities:
            self._index[entity.entity_type][entity.code] = entity
        self._available = available

    @classmethod
    def unavailable(cls) -> "LookupTable":
        """Empty table that reports itself as not loaded"""
        return cls(available=False)

    @classmethod
    def from_dict(cls, data: dict) -> "LookupTable":
        entities = []
        for section, (entity_type, relation) in _SECTIONS.items():
            for raw in data.get(section, []):
                references = {}
                if relation is not None:
                    references[relation.value] = list(raw.get(relation.value, []))
                entities.append(LookupEntity(
                    code=raw["code"],
                    entity_type=entity_type,
                    description=raw.get("description", ""),
                    full_name=raw.get("full_name", raw.get("name", "")),
                    references=references,
                ))
        return cls(entities)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "LookupTable":
        """
        Load a table from JSON.

        Raises:
            LookupUnavailable: file missing or malformed
        """
        path = Path(path)
        if not path.exists():
            raise LookupUnavailable(f"Lookup file not found: {path}")
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            table = cls.from_dict(data)
        except (json.JSONDecodeError, OSError, KeyError, TypeError, AttributeError, ValidationError) as e:
            raise LookupUnavailable(f"Failed to load lookup file {path}: {e}") from e

        stats = table.stats()
        logger.info(
            "Loaded lookup table from %s: %d transactions, %d roles, %d positions",
            path, stats["transactions"], stats["roles"], stats["positions"],
        )
        return table

    @property
    def is_available(self) -> bool:
        return self._available

    def get_entity(self, code: str, entity_type: Optional[EntityType] = None) -> Optional[LookupEntity]:
        """
        Exact case-insensitive match.

        Without ``entity_type`` the first match in transaction, role, position
        order is returned.
        """
        key = (code or "").strip().upper()
        if not key:
            return None
        if entity_type is not None:
            return self._index[EntityType(entity_type)].get(key)
        for t in _TYPE_ORDER:
            entity = self._index[t].get(key)
            if entity is not None:
                return entity
        return None

    def get_entities(self, code: str) -> List[LookupEntity]:
        """Every entity with this code, one per type"""
        key = (code or "").strip().upper()
        return [self._index[t][key] for t in _TYPE_ORDER if key in self._index[t]]

    def contains(self, code: str) -> bool:
        return self.get_entity(code) is not None

    def related(self, code: str, relation: Relation) -> List[LookupEntity]:
        """Entities referenced from ``code`` through ``relation``"""
        relation = Relation(relation)
        target_type = EntityType.TRANSACTION if relation == Relation.TRANSACTIONS else EntityType.ROLE
        source_type = EntityType.ROLE if relation == Relation.TRANSACTIONS else EntityType.POSITION
        source = self.get_entity(code, source_type)
        if source is None:
            return []
        return [
            self._index[target_type][c]
            for c in source.related(relation.value)
            if c in self._index[target_type]
        ]

    def transactions_for_role(self, code: str) -> List[LookupEntity]:
        return self.related(code, Relation.TRANSACTIONS)

    def roles_for_position(self, code: str) -> List[LookupEntity]:
        return self.related(code, Relation.ROLES)

    def transactions_for_position(self, code: str) -> List[LookupEntity]:
        """Union of the transactions of every role assigned to the position"""
        seen: Dict[str, LookupEntity] = {}
        for role in self.roles_for_position(code):
            for transaction in self.transactions_for_role(role.code):
                seen.setdefault(transaction.code, transaction)
        return list(seen.values())

    def roles_with_transaction(self, code: str) -> List[LookupEntity]:
        """Reverse lookup: roles that grant a transaction"""
        key = (code or "").strip().upper()
        return sorted(
            (r for r in self._index[EntityType.ROLE].values()
             if key in r.related(Relation.TRANSACTIONS.value)),
            key=lambda r: r.code,
        )

    def positions_with_role(self, code: str) -> List[LookupEntity]:
        """Reverse lookup: positions that are assigned a role"""
        key = (code or "").strip().upper()
        return sorted(
            (p for p in self._index[EntityType.POSITION].values()
             if key in p.related(Relation.ROLES.value)),
            key=lambda p: p.code,
        )

    def resolve(self, codes: Iterable[str]) -> LookupResult:
        """Resolve codes into typed entity lists, keeping first-seen order"""
        result = LookupResult()
        seen = set()
        for code in codes:
            key = (code or "").strip().upper()
            if not key or key in seen:
                continue
            seen.add(key)
            entities = self.get_entities(key)
            if not entities:
                result.missing.append(key)
            for entity in entities:
                result.by_type(entity.entity_type).append(entity)
        return result

    def stats(self) -> Dict[str, int]:
        return {
            "transactions": len(self._index[EntityType.TRANSACTION]),
            "roles": len(self._index[EntityType.ROLE]),
            "positions": len(self._index[EntityType.POSITION]),
        }
