"""
Tests for the harvester

Covers detection, fact building with redaction, harvest state on disk,
the Jira source over a mocked transport, and HarvestJob's
deduplication and watermark rules.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from conftest import FakeEmbedder

T0 = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)


def _candidate(cid, title, body, comments=(), resolution="Fixed", minutes=0, labels=("vpn",)):
    from opsdesk.harvester.sources.base import Candidate
    return Candidate(
        id=cid,
        source="jira",
        title=title,
        body=body,
        updated_at=T0 + timedelta(minutes=minutes),
        url=f"https://jira.example.com/browse/{cid}",
        comments=list(comments),
        labels=list(labels),
        category="Network",
        resolution=resolution,
    )


def _candidates():
    return [
        _candidate(
            "OPS-1", "VPN drops after client update",
            "Users lose the VPN tunnel after the 5.2 update.",
            comments=["Looking into it", "Root cause was the new driver. Fixed by rolling back to 5.1."],
            minutes=1,
        ),
        _candidate(
            "OPS-2", "Printer offline", "Printer on floor 3 shows offline.",
            comments=["Any update?"], resolution="Won't Fix", minutes=2, labels=("printer",),
        ),
        _candidate(
            "OPS-3", "Password reset loop",
            "User cannot reset the password. Workaround: use the self-service portal, issue resolved.",
            resolution="Done", minutes=3, labels=("password",),
        ),
    ]


class FakeSource:
    """FactSource returning a fixed candidate list"""

    def __init__(self, candidates=None, error=None, gate=None):
        self.source_name = "jira"
        self.candidates = list(candidates or [])
        self.error = error
        self.gate = gate
        self.since_calls = []
        self.closed = False

    async def fetch_candidates(self, since=None):
        self.since_calls.append(since)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return list(self.candidates)

    async def close(self):
        self.closed = True


def _tickets(store=None):
    from opsdesk.retriever.sources import create_connector
    from opsdesk.retriever.stores import InMemoryStore
    return create_connector("tickets", FakeEmbedder(), store=store or InMemoryStore(), max_retries=0)


def _job(source, connector, tmp_path, **kwargs):
    from opsdesk.harvester import HarvestJob, ProcessedStore
    return HarvestJob(source, connector, store=ProcessedStore(tmp_path, name="jira"), **kwargs)


class TestSolutionDetector:
    def test_accepts_fixed_issue(self):
        from opsdesk.harvester import SolutionDetector

        result = SolutionDetector().detect(_candidates()[0])
        assert result.is_solution
        assert "root cause" in result.matched_keywords
        assert result.confidence == 0.9

    def test_rejects_negative_resolution(self):
        from opsdesk.harvester import SolutionDetector

        result = SolutionDetector().detect(_candidates()[1])
        assert not result.is_solution
        assert "won't fix" in result.reason

    def test_rejects_short_text(self):
        from opsdesk.harvester import SolutionDetector

        result = SolutionDetector().detect(_candidate("OPS-9", "Fixed", ""))
        assert not result.is_solution
        assert result.reason == "too short"

    def test_rejects_without_keywords(self):
        from opsdesk.harvester import SolutionDetector

        result = SolutionDetector().detect(
            _candidate("OPS-9", "Laptop request", "New hire needs a laptop by Monday.", resolution="Done")
        )
        assert not result.is_solution
        assert result.reason == "no solution keywords"

    def test_spanish_keywords(self):
        from opsdesk.harvester import SolutionDetector

        result = SolutionDetector().detect(_candidate(
            "OPS-9", "Certificado caducado",
            "El certificado del proxy caducó. Solucionado: se corrigió renovando el certificado.",
            resolution="Resuelto",
        ))
        assert result.is_solution
        assert "solucionado" in result.matched_keywords


class TestFactBuilder:
    def test_build_uses_latest_solution_comment(self):
        from opsdesk.harvester import FactBuilder

        item = FactBuilder().build(_candidates()[0])

        assert item.id == "jira-OPS-1"
        assert item.title == "VPN drops after client update"
        assert item.text.startswith("Problem: Users lose the VPN tunnel")
        assert "Solution: Root cause was the new driver." in item.text
        assert item.tags == ["vpn"]
        assert item.metadata["source_id"] == "OPS-1"
        assert item.last_updated == T0 + timedelta(minutes=1)

    def test_solution_from_body_sentences(self):
        from opsdesk.harvester import FactBuilder

        item = FactBuilder().build(_candidates()[2])
        assert "Solution: Workaround: use the self-service portal, issue resolved." in item.text

    def test_redacts_sensitive_data(self):
        from opsdesk.harvester import FactBuilder

        candidate = _candidate(
            "OPS-7", "Mailbox locked",
            "Contact admin@example.com for access.",
            comments=["Fixed: reset done, password: hunter2"],
        )
        item = FactBuilder().build(candidate)

        assert "admin@example.com" not in item.text
        assert "[EMAIL]" in item.text
        assert "hunter2" not in item.text
        assert "redaction_notes" in item.metadata

    def test_same_candidate_same_id(self):
        from opsdesk.harvester import FactBuilder

        builder = FactBuilder()
        assert builder.build(_candidates()[0]).id == builder.build(_candidates()[0]).id


class TestProcessedStore:
    def test_round_trip(self, tmp_path):
        from opsdesk.harvester import ProcessedStore

        store = ProcessedStore(tmp_path)
        store.save_processed(["jira-OPS-1", "jira-OPS-3", "jira-OPS-1"])
        store.save_watermark(T0)

        assert store.load_processed() == ["jira-OPS-1", "jira-OPS-3"]
        assert store.load_watermark() == T0
        assert json.loads(store.processed_path.read_text()) == ["jira-OPS-1", "jira-OPS-3"]

    def test_empty_state(self, tmp_path):
        from opsdesk.harvester import ProcessedStore

        store = ProcessedStore(tmp_path)
        assert store.load_processed() == []
        assert store.load_watermark() is None

    def test_corrupt_processed_file_raises(self, tmp_path):
        from opsdesk.common.errors import PersistenceError
        from opsdesk.harvester import ProcessedStore

        store = ProcessedStore(tmp_path)
        store.processed_path.write_text("[oops")
        with pytest.raises(PersistenceError):
            store.load_processed()

    def test_unreadable_watermark_is_ignored(self, tmp_path, caplog):
        import logging
        from opsdesk.harvester import ProcessedStore

        store = ProcessedStore(tmp_path)
        store.watermark_path.write_text(json.dumps({"watermark": "not a date"}))
        with caplog.at_level(logging.WARNING, logger="opsdesk.harvester.processed_store"):
            assert store.load_watermark() is None
        assert "Ignoring unreadable watermark" in caplog.text


class TestHarvestJob:
    @pytest.mark.asyncio
    async def test_run_adds_accepted_candidates(self, tmp_path):
        connector = _tickets()
        job = _job(FakeSource(_candidates()), connector, tmp_path)

        report = await job.run_once()

        assert report.fetched == 3
        assert report.accepted == 2
        assert report.rejected == 1
        assert report.added == 2
        assert report.added_ids == ["jira-OPS-1", "jira-OPS-3"]
        assert report.watermark == (T0 + timedelta(minutes=3)).isoformat()
        assert sorted(i.id for i in connector.get_all()) == ["jira-OPS-1", "jira-OPS-3"]
        assert job.last_report is report

    @pytest.mark.asyncio
    async def test_second_run_adds_nothing(self, tmp_path):
        connector = _tickets()
        source = FakeSource(_candidates())
        job = _job(source, connector, tmp_path)

        await job.run_once()
        report = await job.run_once()

        assert report.added == 0
        assert report.already_processed == 2
        assert len(connector.get_all()) == 2
        assert source.since_calls == [None, T0 + timedelta(minutes=3)]

    @pytest.mark.asyncio
    async def test_fact_already_in_source_is_recorded(self, tmp_path):
        from opsdesk.harvester import FactBuilder, ProcessedStore

        connector = _tickets()
        await connector.add(FactBuilder().build(_candidates()[0]))
        job = _job(FakeSource(_candidates()), connector, tmp_path)

        report = await job.run_once()

        assert report.added == 1
        assert report.already_processed == 1
        assert ProcessedStore(tmp_path).load_processed() == ["jira-OPS-1", "jira-OPS-3"]

    @pytest.mark.asyncio
    async def test_failed_add_keeps_watermark(self, tmp_path):
        from opsdesk.common.errors import PersistenceError
        from opsdesk.harvester import ProcessedStore
        from opsdesk.retriever.stores import InMemoryStore

        class BrokenStore(InMemoryStore):
            def save(self, items):
                raise PersistenceError("read-only filesystem")

        job = _job(FakeSource(_candidates()), _tickets(BrokenStore()), tmp_path)
        report = await job.run_once()

        assert report.failed == 2
        assert report.added == 0
        assert report.watermark is None
        state = ProcessedStore(tmp_path)
        assert state.load_watermark() is None
        assert state.load_processed() == []

    @pytest.mark.asyncio
    async def test_source_unavailable_is_reported(self, tmp_path):
        from opsdesk.common.errors import SourceUnavailable

        job = _job(FakeSource(error=SourceUnavailable("jira", "503 Service Unavailable")), _tickets(), tmp_path)
        report = await job.run_once()

        assert "503" in report.error
        assert report.added == 0

    @pytest.mark.asyncio
    async def test_overlapping_run_is_skipped(self, tmp_path):
        gate = asyncio.Event()
        job = _job(FakeSource(_candidates(), gate=gate), _tickets(), tmp_path)

        first = asyncio.create_task(job.run_once())
        await asyncio.sleep(0.01)
        assert job.is_running

        second = await job.run_once()
        assert second.skipped

        gate.set()
        report = await first
        assert not report.skipped
        assert report.added == 2

    @pytest.mark.asyncio
    async def test_start_and_stop(self, tmp_path):
        source = FakeSource(_candidates())
        job = _job(source, _tickets(), tmp_path, period_seconds=0.01)

        job.start()
        assert job.is_scheduled
        await asyncio.sleep(0.1)
        await job.stop()

        assert not job.is_scheduled
        assert source.closed
        assert len(source.since_calls) >= 2


def _issue(key, updated, comment="Fixed by restarting the service.", resolution="Fixed"):
    return {
        "id": key.split("-")[1],
        "key": key,
        "fields": {
            "summary": f"Issue {key}",
            "description": "The service was down for everyone on the floor.",
            "updated": updated,
            "resolution": {"name": resolution},
            "labels": ["outage"],
            "comment": {"comments": [{"body": comment}]},
            "issuetype": {"name": "Incident"},
            "components": [{"name": "Network"}],
        },
    }


class TestJiraFactSource:
    def _source(self, handler, **kwargs):
        from opsdesk.harvester import JiraFactSource

        client = httpx.AsyncClient(base_url="https://jira.example.com", transport=httpx.MockTransport(handler))
        return JiraFactSource(base_url="https://jira.example.com", project="OPS", client=client, **kwargs)

    def test_build_jql(self):
        source = self._source(lambda request: httpx.Response(200, json={}))

        assert source.build_jql(None) == 'project = "OPS" AND statusCategory = Done ORDER BY updated ASC'
        assert source.build_jql(T0) == (
            'project = "OPS" AND statusCategory = Done AND updated >= "2024/01/15 10:30" ORDER BY updated ASC'
        )

    def test_custom_jql(self):
        from opsdesk.harvester import JiraFactSource

        source = JiraFactSource(base_url="https://jira.example.com", jql="labels = kb")
        assert source.build_jql(None) == "(labels = kb) ORDER BY updated ASC"

    @pytest.mark.asyncio
    async def test_fetch_paginates(self):
        pages = {
            0: [_issue("OPS-1", "2024-01-15T10:30:00.000+0000"), _issue("OPS-2", "2024-01-15T11:00:00.000+0000")],
            2: [_issue("OPS-3", "2024-01-15T12:00:00.000+0000")],
        }
        seen = []

        def handler(request):
            start_at = int(request.url.params["startAt"])
            seen.append(start_at)
            return httpx.Response(200, json={"startAt": start_at, "total": 3, "issues": pages[start_at]})

        source = self._source(handler, page_size=2)
        candidates = await source.fetch_candidates()

        assert seen == [0, 2]
        assert [c.key for c in candidates] == ["jira-OPS-1", "jira-OPS-2", "jira-OPS-3"]
        first = candidates[0]
        assert first.url == "https://jira.example.com/browse/OPS-1"
        assert first.category == "Network"
        assert first.resolution == "Fixed"
        assert first.comments == ["Fixed by restarting the service."]
        assert first.updated_at == T0

    @pytest.mark.asyncio
    async def test_http_error_raises_source_unavailable(self):
        from opsdesk.common.errors import SourceUnavailable

        source = self._source(lambda request: httpx.Response(503, text="maintenance"))
        with pytest.raises(SourceUnavailable):
            await source.fetch_candidates()

    @pytest.mark.asyncio
    async def test_invalid_json_raises_source_unavailable(self):
        from opsdesk.common.errors import SourceUnavailable

        source = self._source(lambda request: httpx.Response(200, content=b"<html>login</html>"))
        with pytest.raises(SourceUnavailable, match="invalid JSON"):
            await source.fetch_candidates()

    @pytest.mark.asyncio
    async def test_end_to_end_harvest(self, tmp_path):
        def handler(request):
            return httpx.Response(200, json={
                "total": 1,
                "issues": [_issue("OPS-5", "2024-01-15T10:30:00.000+0000")],
            })

        connector = _tickets()
        job = _job(self._source(handler), connector, tmp_path)
        report = await job.run_once()

        assert report.added_ids == ["jira-OPS-5"]
        assert connector.get_by_id("jira-OPS-5").url == "https://jira.example.com/browse/OPS-5"
