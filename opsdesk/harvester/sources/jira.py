"""
Jira Fact Source

Fetches resolved issues through the Jira REST search API and converts them
to Candidates.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from ...common.errors import SourceUnavailable
from .base import Candidate, FactSource

logger = logging.getLogger("opsdesk.harvester.sources.jira")

SEARCH_PATH = "/rest/api/2/search"
ISSUE_FIELDS = [
    "summary", "description", "resolution", "resolutiondate", "updated",
    "labels", "comment", "issuetype", "components",
]


def _parse_jira_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse Jira timestamps like 2024-01-15T10:30:00.000+0000"""
    if not value:
        return None
    for fmt in ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S%z"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    return None


class JiraFactSource(FactSource):
    """
    Fact source for Jira issues.

    Fetches issues that reached a Done status category, ordered by update
    time, paginating with startAt/maxResults.
    """

    def __init__(
        self,
        base_url: str,
        username: str = "",
        api_token: str = "",
        project: str = "",
        jql: str = "",
        page_size: int = 50,
        max_results: int = 500,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            base_url: Jira site URL (e.g., https://example.atlassian.net)
            username: Account email for basic auth
            api_token: API token for basic auth
            project: Project key used when no custom JQL is given
            jql: Custom JQL filter; the watermark clause is appended to it
            page_size: Issues per request
            max_results: Upper bound on issues fetched per run
            timeout: Request timeout in seconds
            client: Pre-built client (tests)
        """
        super().__init__("jira")
        self._base_url = base_url.rstrip("/")
        self._project = project
        self._jql = jql
        self._page_size = page_size
        self._max_results = max_results
        self._owns_client = client is None
        auth = httpx.BasicAuth(username, api_token) if username and api_token else None
        self._client = client or httpx.AsyncClient(
            base_url=self._base_url,
            auth=auth,
            timeout=httpx.Timeout(timeout),
            headers={"Accept": "application/json"},
        )

    def build_jql(self, since: Optional[datetime]) -> str:
        if self._jql:
            clauses = [f"({self._jql})"]
        else:
            clauses = ["statusCategory = Done"]
            if self._project:
                clauses.insert(0, f'project = "{self._project}"')
        if since is not None:
            # Jira JQL only takes minute precision
            clauses.append(f'updated >= "{since.astimezone(timezone.utc).strftime("%Y/%m/%d %H:%M")}"')
        return " AND ".join(clauses) + " ORDER BY updated ASC"

    def _to_candidate(self, issue: Dict[str, Any]) -> Optional[Candidate]:
        fields = issue.get("fields") or {}
        key = issue.get("key")
        updated = _parse_jira_datetime(fields.get("updated"))
        if not key or updated is None:
            logger.debug("Skipping issue without key or update time: %s", issue.get("id"))
            return None

        comments = [
            c.get("body", "")
            for c in (fields.get("comment") or {}).get("comments", [])
            if isinstance(c.get("body"), str) and c.get("body").strip()
        ]
        components = [c.get("name", "") for c in fields.get("components") or [] if c.get("name")]
        issue_type = (fields.get("issuetype") or {}).get("name", "")
        description = fields.get("description")

        return Candidate(
            id=key,
            source=self.source_name,
            title=fields.get("summary") or "",
            body=description if isinstance(description, str) else "",
            updated_at=updated,
            url=f"{self._base_url}/browse/{key}",
            comments=comments,
            labels=list(fields.get("labels") or []),
            category=components[0] if components else issue_type,
            resolution=(fields.get("resolution") or {}).get("name", ""),
            raw_data=issue,
        )

    async def fetch_candidates(self, since: Optional[datetime] = None) -> List[Candidate]:
        jql = self.build_jql(since)
        candidates: List[Candidate] = []
        start_at = 0

        while start_at < self._max_results:
            params = {
                "jql": jql,
                "startAt": start_at,
                "maxResults": min(self._page_size, self._max_results - start_at),
                "fields": ",".join(ISSUE_FIELDS),
            }
            try:
                response = await self._client.get(SEARCH_PATH, params=params)
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPError as e:
                raise SourceUnavailable(self.source_name, str(e)) from e
            except ValueError as e:
                raise SourceUnavailable(self.source_name, f"invalid JSON response: {e}") from e

            issues = data.get("issues") or []
            for issue in issues:
                candidate = self._to_candidate(issue)
                if candidate is not None:
                    candidates.append(candidate)

            start_at += len(issues)
            if not issues or start_at >= data.get("total", 0):
                break

        logger.info("Fetched %d candidates from Jira (jql=%s)", len(candidates), jql)
        return candidates

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
