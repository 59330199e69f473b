"""
Fact Sheet Builder

Turns resolved lookup entities into the structured markdown context handed
to the composer on the specialist path.
"""

from dataclasses import dataclass, field
from typing import List

from ..common.schemas import LookupEntity
from .lookup import LookupResult, LookupTable
from .query_classifier import QueryType

INLINE_LIST_LIMIT = 10
TABLE_ROW_LIMIT = 30
COMPARE_LIMIT = 3


@dataclass
class FactSheet:
    """Specialist context plus the entities it was built from"""
    text: str
    query_type: QueryType
    entities: List[LookupEntity] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return bool(self.entities)


def _truncate(text: str, limit: int = 30) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _transaction_lines(transactions: List[LookupEntity], heading: str) -> List[str]:
    lines = [heading]
    if len(transactions) <= INLINE_LIST_LIMIT:
        lines.extend(f"- **{t.code}**: {t.description}" for t in transactions)
    else:
        lines.append(f"Total: {len(transactions)} transactions")
        lines.append("| Code | Description |")
        lines.append("|------|-------------|")
        lines.extend(f"| {t.code} | {t.description} |" for t in transactions[:TABLE_ROW_LIMIT])
        if len(transactions) > TABLE_ROW_LIMIT:
            lines.append(f"| ... | (and {len(transactions) - TABLE_ROW_LIMIT} more) |")
    lines.append("")
    return lines


def _role_lines(lookup: LookupTable, roles: List[LookupEntity]) -> List[str]:
    lines = ["### Roles"]
    for role in roles:
        lines.append(f"- **{role.code}**: {role.description}")
        if role.full_name:
            lines.append(f"  Full name: {role.full_name}")
        lines.append(f"  Transactions: {len(lookup.transactions_for_role(role.code))}")
    lines.append("")
    return lines


def _position_lines(lookup: LookupTable, positions: List[LookupEntity]) -> List[str]:
    lines = ["### Positions"]
    for position in positions:
        lines.append(f"- **{position.code}**: {position.full_name or position.description}")
        roles = [r.code for r in lookup.roles_for_position(position.code)]
        if roles:
            more = "..." if len(roles) > 5 else ""
            lines.append(f"  Roles: {len(roles)} ({', '.join(roles[:5])}{more})")
            lines.append(f"  Total transactions: {len(lookup.transactions_for_position(position.code))}")
    lines.append("")
    return lines


def _reverse_lines(lookup: LookupTable, result: LookupResult) -> List[str]:
    lines = ["### Reverse lookup"]
    for transaction in result.transactions:
        roles = lookup.roles_with_transaction(transaction.code)
        if roles:
            lines.append(f"- **{transaction.code}** is granted by roles: {', '.join(r.code for r in roles)}")
            positions = sorted({p.code for r in roles for p in lookup.positions_with_role(r.code)})
            if positions:
                lines.append(f"  Positions holding those roles: {', '.join(positions)}")
        else:
            lines.append(f"- **{transaction.code}** is not granted by any known role")
    for role in result.roles:
        positions = lookup.positions_with_role(role.code)
        if positions:
            lines.append(f"- Role **{role.code}** is assigned to positions: {', '.join(p.code for p in positions)}")
    lines.append("")
    return lines


def _comparison_lines(lookup: LookupTable, result: LookupResult) -> List[str]:
    lines: List[str] = []

    if len(result.positions) >= 2:
        positions = result.positions[:COMPARE_LIMIT]
        lines.append("### Position comparison")
        lines.append("| Aspect | " + " | ".join(p.code for p in positions) + " |")
        lines.append("|--------|" + "|".join("-------" for _ in positions) + "|")
        lines.append("| Name | " + " | ".join(p.full_name or p.description for p in positions) + " |")
        lines.append("| Roles | " + " | ".join(str(len(lookup.roles_for_position(p.code))) for p in positions) + " |")
        lines.append(
            "| Transactions | "
            + " | ".join(str(len(lookup.transactions_for_position(p.code))) for p in positions)
            + " |"
        )
        lines.append("")

    if len(result.roles) >= 2:
        roles = result.roles[:COMPARE_LIMIT]
        lines.append("### Role comparison")
        lines.append("| Aspect | " + " | ".join(r.code for r in roles) + " |")
        lines.append("|--------|" + "|".join("-------" for _ in roles) + "|")
        lines.append("| Description | " + " | ".join(_truncate(r.description) for r in roles) + " |")
        lines.append(
            "| Transactions | "
            + " | ".join(str(len(lookup.transactions_for_role(r.code))) for r in roles)
            + " |"
        )
        shared = set.intersection(*(
            {t.code for t in lookup.transactions_for_role(r.code)} for r in roles
        ))
        lines.append(f"| Shared transactions | {len(shared)} |" + " |" * (len(roles) - 1))
        lines.append("")

    if len(result.transactions) >= 2:
        transactions = result.transactions[:COMPARE_LIMIT]
        lines.append("### Transaction comparison")
        lines.append("| Aspect | " + " | ".join(t.code for t in transactions) + " |")
        lines.append("|--------|" + "|".join("-------" for _ in transactions) + "|")
        lines.append("| Description | " + " | ".join(_truncate(t.description) for t in transactions) + " |")
        lines.append(
            "| Granted by roles | "
            + " | ".join(str(len(lookup.roles_with_transaction(t.code))) for t in transactions)
            + " |"
        )
        lines.append("")

    return lines


def build_fact_sheet(lookup: LookupTable, codes: List[str], query_type: QueryType) -> FactSheet:
    """
    Build the specialist context for a set of verified codes.

    Args:
        lookup: Loaded lookup table
        codes: Verified codes from classification
        query_type: Result of QueryClassifier.detect_query_type

    Returns:
        FactSheet; ``found`` is False when no code resolved
    """
    result = lookup.resolve(codes)
    entities = result.transactions + result.roles + result.positions

    if not result.found:
        lines = [
            "No exact data was found for this query.",
            "The user may need to check the code or provide more details.",
        ]
        if result.missing:
            lines.append(f"Codes not found: {', '.join(result.missing)}")
        return FactSheet(text="\n".join(lines), query_type=query_type, missing=result.missing)

    lines: List[str] = [f"Query type: {query_type.value}", ""]

    if result.transactions:
        lines.extend(_transaction_lines(result.transactions, "### Transactions"))
    if result.roles:
        lines.extend(_role_lines(lookup, result.roles))
        if query_type == QueryType.ROLE_TRANSACTIONS:
            for role in result.roles:
                granted = lookup.transactions_for_role(role.code)
                if granted:
                    lines.extend(_transaction_lines(granted, f"### Transactions in role {role.code}"))
    if result.positions:
        lines.extend(_position_lines(lookup, result.positions))
        if query_type == QueryType.POSITION_ACCESS:
            for position in result.positions:
                granted = lookup.transactions_for_position(position.code)
                if granted:
                    lines.extend(_transaction_lines(granted, f"### Transactions for position {position.code}"))

    if query_type == QueryType.REVERSE_LOOKUP:
        lines.extend(_reverse_lines(lookup, result))

    lines.extend(_comparison_lines(lookup, result))

    if result.missing:
        lines.append(f"Codes not found: {', '.join(result.missing)}")

    return FactSheet(
        text="\n".join(lines).strip(),
        query_type=query_type,
        entities=entities,
        missing=result.missing,
    )
