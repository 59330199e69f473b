"""
Lookup Entity Schema

Structured entities for the specialist path: SAP transactions, technical
roles and organisational positions, linked by typed cross-references.
"""

from enum import Enum
from typing import Dict, List

from pydantic import BaseModel, Field, field_validator


class EntityType(str, Enum):
    """Kinds of specialist entities"""
    TRANSACTION = "transaction"
    ROLE = "role"
    POSITION = "position"


class Relation(str, Enum):
    """Cross-reference relation types"""
    TRANSACTIONS = "transactions"  # role -> transactions it grants
    ROLES = "roles"  # position -> roles assigned to it


class LookupEntity(BaseModel):
    """A single specialist entity keyed by its code"""
    code: str = Field(..., description="Case-insensitive unique key")
    entity_type: EntityType
    description: str = ""
    full_name: str = ""
    references: Dict[str, List[str]] = Field(default_factory=dict)

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, value: str) -> str:
        code = value.strip().upper()
        if not code:
            raise ValueError("code must not be empty")
        return code

    @field_validator("references")
    @classmethod
    def _normalize_references(cls, value: Dict[str, List[str]]) -> Dict[str, List[str]]:
        return {
            relation: list(dict.fromkeys(c.strip().upper() for c in codes if c and c.strip()))
            for relation, codes in value.items()
        }

    def related(self, relation: str) -> List[str]:
        """Codes related to this entity by the given relation"""
        return list(self.references.get(relation, []))
