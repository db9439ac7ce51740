"""
Tests for identity reconciliation: identifier map, auto-resolve, gap-fill,
export links and the final merge.
"""
import json

import httpx
import pytest

from fakes import FakeGateway, profiles, resolution, text_result
from api.services.export_fetcher import ExportFetcher
from api.services.identifier_extractor import DetectedFields
from api.services.identity_reconciler import IdentifierMap, IdentityReconciler, chunked
from api.services.resilience import ToolTransportError
from config.enrichment_config import DEFAULT_PROFILE_DOMAINS

pytestmark = pytest.mark.unit


def resolve_each(arguments: dict) -> dict:
    """resolve_identities handler mapping every identifier to `p-<identifier>`."""
    kind = arguments["id_type"]
    return resolution(*[(f"p-{value}", kind, [value]) for value in arguments["identifiers"]])


def profile_each(arguments: dict) -> dict:
    """get_person handler returning a profile for every requested id."""
    return profiles(*[
        {"t0.person_id": pid, "employment": {"title": "Engineer"}}
        for pid in arguments["person_ids"]
    ])


def logged(name: str, result: dict, arguments: dict = None) -> dict:
    return {"name": name, "input": arguments or {}, "result": result}


class TestIdentifierMap:

    def test_authoritative_last_write_wins(self):
        identifiers = IdentifierMap()
        identifiers.record("A@x.com", "p1", authoritative=True)
        identifiers.record("a@x.com ", "p2", authoritative=True)
        assert identifiers.get("a@x.com") == "p2"

    def test_fallback_never_overwrites(self):
        identifiers = IdentifierMap()
        identifiers.record("a@x.com", "p1", authoritative=True)
        assert identifiers.record("a@x.com", "p9", authoritative=False) is False
        assert identifiers.get("a@x.com") == "p1"

    def test_fallback_fills_absent(self):
        identifiers = IdentifierMap()
        assert identifiers.record("b@x.com", "p2", authoritative=False) is True
        assert "b@x.com" in identifiers

    @pytest.mark.parametrize("identifier,person_id", [("", "p1"), ("a@x.com", None), ("a@x.com", "  ")])
    def test_blank_values_ignored(self, identifier, person_id):
        identifiers = IdentifierMap()
        assert identifiers.record(identifier, person_id, authoritative=True) is False
        assert len(identifiers) == 0


class TestChunked:

    def test_batches(self):
        assert [len(b) for b in chunked(list(range(100)), 45)] == [45, 45, 10]

    def test_empty(self):
        assert list(chunked([], 45)) == []


class TestAutoResolve:

    @pytest.mark.asyncio
    async def test_hundred_unresolved_emails_in_three_batches(self, email_fields):
        rows = [{"Email": f"user{i}@example.com"} for i in range(100)]
        gateway = FakeGateway({"resolve_identities": resolve_each, "get_person": profile_each})
        tool_calls = []

        result = await IdentityReconciler(gateway).reconcile(tool_calls, rows, email_fields)

        batches = gateway.calls_to("resolve_identities")
        assert [len(b["identifiers"]) for b in batches] == [45, 45, 10]
        assert all(b["id_type"] == "email" and b["id_hash"] == "plaintext" for b in batches)
        assert result.resolved_count == 100
        assert result.enriched_count == 100
        # Auto-resolve and gap-fill calls are appended to the log
        assert [c["name"] for c in tool_calls].count("resolve_identities") == 3

    @pytest.mark.asyncio
    async def test_only_unmapped_identifiers_resolved(self, email_fields):
        rows = [{"Email": "a@x.com"}, {"Email": "B@x.com"}]
        tool_calls = [logged("resolve_identities", resolution(("p1", "email", ["a@x.com"])))]
        gateway = FakeGateway({"resolve_identities": resolve_each, "get_person": profile_each})

        await IdentityReconciler(gateway).reconcile(tool_calls, rows, email_fields)

        assert gateway.calls_to("resolve_identities") == [
            {"id_type": "email", "id_hash": "plaintext", "identifiers": ["B@x.com"]},
        ]

    @pytest.mark.asyncio
    async def test_batch_failure_warns_and_continues(self, email_fields):
        rows = [{"Email": "a@x.com"}]
        gateway = FakeGateway({"resolve_identities": ToolTransportError("connection reset")})
        tool_calls = []

        result = await IdentityReconciler(gateway).reconcile(tool_calls, rows, email_fields)

        assert result.resolved_count == 0
        assert result.enriched_rows == rows
        assert any("Auto-resolve batch" in w for w in result.warnings)
        assert tool_calls[0]["result"]["isError"] is True


class TestGapFill:

    @pytest.mark.asyncio
    async def test_fetches_missing_profiles_only(self, email_fields):
        rows = [{"Email": "a@x.com"}, {"Email": "b@x.com"}, {"Email": "c@x.com"}]
        tool_calls = [
            logged("resolve_identities", resolution(
                ("p1", "email", ["a@x.com"]),
                ("p2", "email", ["b@x.com"]),
                ("p3", "email", ["c@x.com"]),
            )),
            logged("get_person", profiles({"t0.person_id": "p1"}, {"t0.person_id": "p2"})),
        ]
        gateway = FakeGateway({"get_person": profile_each})

        result = await IdentityReconciler(gateway).reconcile(tool_calls, rows, email_fields)

        assert gateway.calls_to("get_person") == [
            {"person_ids": ["p3"], "domains": DEFAULT_PROFILE_DOMAINS},
        ]
        assert gateway.calls_to("resolve_identities") == []
        assert result.enriched_count == 3
        assert result.enriched_rows[2]["employment_title"] == "Engineer"

    @pytest.mark.asyncio
    async def test_gap_fill_failure_leaves_rows_unenriched(self, email_fields):
        rows = [{"Email": "a@x.com"}]
        tool_calls = [logged("resolve_identities", resolution(("p1", "email", ["a@x.com"])))]
        gateway = FakeGateway({"get_person": ToolTransportError("timeout")})

        result = await IdentityReconciler(gateway).reconcile(tool_calls, rows, email_fields)

        assert result.resolved_count == 1
        assert result.enriched_count == 0
        assert any("Gap-fill batch" in w for w in result.warnings)
        assert any("still have no profile" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_failed_gap_fill_returns_third_row_as_uploaded(self, email_fields):
        rows = [
            {"Email": "a@x.com", "Company": "Acme"},
            {"Email": "b@x.com", "Company": "Globex"},
            {"Email": "c@x.com", "Company": "Initech"},
        ]
        tool_calls = [
            logged("resolve_identities", resolution(
                ("p1", "email", ["a@x.com"]),
                ("p2", "email", ["b@x.com"]),
                ("p3", "email", ["c@x.com"]),
            )),
            logged("get_person", profiles(
                {"t0.person_id": "p1", "employment": {"title": "Engineer"}},
                {"t0.person_id": "p2", "employment": {"title": "Designer"}},
            )),
        ]
        gateway = FakeGateway({"get_person": ToolTransportError("connection reset")})

        result = await IdentityReconciler(gateway).reconcile(tool_calls, rows, email_fields)

        assert gateway.calls_to("get_person") == [
            {"person_ids": ["p3"], "domains": DEFAULT_PROFILE_DOMAINS},
        ]
        assert [r.get("person_id") for r in result.enriched_rows[:2]] == ["p1", "p2"]
        assert result.enriched_rows[1]["employment_title"] == "Designer"
        assert result.enriched_rows[2] == {"Email": "c@x.com", "Company": "Initech"}
        assert "person_id" not in result.enriched_rows[2]
        assert (result.resolved_count, result.enriched_count) == (3, 2)


class TestReconcile:

    @pytest.mark.asyncio
    async def test_end_to_end(self, email_fields):
        rows = [
            {"Email": "a@x.com", "Company": "Acme"},
            {"Email": "b@x.com", "Company": ""},
            {"Email": "c@x.com", "Company": "Initech"},
        ]
        original = [dict(r) for r in rows]
        tool_calls = [
            logged("resolve_identities", resolution(("p1", "email", ["a@x.com"]), ("p2", "email", ["b@x.com"]))),
            logged("get_person", profiles({
                "t0.person_id": "p1",
                "Company": "Other Corp",
                "demographic.json": "{'age_range': '35-44',}",
            })),
        ]
        gateway = FakeGateway({"resolve_identities": resolve_each, "get_person": profile_each})

        result = await IdentityReconciler(gateway).reconcile(tool_calls, rows, email_fields)

        assert rows == original
        assert [r["Email"] for r in result.enriched_rows] == ["a@x.com", "b@x.com", "c@x.com"]
        first = result.enriched_rows[0]
        assert first["person_id"] == "p1"
        assert first["age_range"] == "35-44"
        # Existing values are not overwritten
        assert first["Company"] == "Acme"
        assert result.enriched_rows[2]["person_id"] == "p-c@x.com"
        assert result.identifier_to_person_id == {"a@x.com": "p1", "b@x.com": "p2", "c@x.com": "p-c@x.com"}
        assert result.resolved_ids == ["p1", "p2", "p-c@x.com"]
        assert (result.resolved_count, result.enriched_count) == (3, 3)

    @pytest.mark.asyncio
    async def test_no_identifiers_leaves_rows_unchanged(self):
        rows = [{"Company": "Acme"}]
        gateway = FakeGateway()

        result = await IdentityReconciler(gateway).reconcile([], rows, DetectedFields())

        assert result.enriched_rows == rows
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_business_error_skipped(self, email_fields):
        rows = [{"Email": "a@x.com"}]
        tool_calls = [
            logged("resolve_identities", text_result("MCP error -32000: quota exceeded")),
            logged("resolve_identities", resolution(("p1", "email", ["a@x.com"]))),
        ]
        gateway = FakeGateway({"get_person": profile_each})

        result = await IdentityReconciler(gateway).reconcile(tool_calls, rows, email_fields)

        assert result.enriched_count == 1
        assert any("returned an error" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_text_block_read_despite_structured_wrapper(self, email_fields):
        rows = [{"Email": "a@x.com"}]
        raw = resolution(("p1", "email", ["a@x.com"]))
        payload = json.loads(raw["content"][0]["text"])
        raw["structuredContent"] = {"result": payload}
        gateway = FakeGateway({"get_person": profile_each})

        result = await IdentityReconciler(gateway).reconcile([logged("resolve_identities", raw)], rows, email_fields)

        assert result.identifier_to_person_id == {"a@x.com": "p1"}
        assert gateway.calls_to("resolve_identities") == []
        assert result.enriched_rows[0]["person_id"] == "p1"

    @pytest.mark.asyncio
    async def test_identity_without_person_id_skipped(self, email_fields):
        rows = [{"Email": "a@x.com"}]
        bad = text_result({"identities": [{"identifiers": {"email": ["a@x.com"]}}]})
        gateway = FakeGateway({"resolve_identities": resolve_each, "get_person": profile_each})

        result = await IdentityReconciler(gateway).reconcile([logged("resolve_identities", bad)], rows, email_fields)

        assert any("without person_id" in w for w in result.warnings)
        assert result.enriched_rows[0]["person_id"] == "p-a@x.com"

    @pytest.mark.asyncio
    async def test_person_id_column_does_not_override_resolution(self):
        fields = DetectedFields(emails="Email", person_ids="PID")
        rows = [{"Email": "a@x.com", "PID": "p-old"}, {"Email": "b@x.com", "PID": "p2"}]
        tool_calls = [logged("resolve_identities", resolution(("p1", "email", ["a@x.com"])))]
        gateway = FakeGateway({"get_person": profile_each})

        result = await IdentityReconciler(gateway).reconcile(tool_calls, rows, fields)

        assert result.identifier_to_person_id["a@x.com"] == "p1"
        assert result.identifier_to_person_id["b@x.com"] == "p2"
        assert gateway.calls_to("resolve_identities") == []
        # Explicit column wins for the row itself
        assert result.enriched_rows[0]["PID"] == "p-old"

    @pytest.mark.asyncio
    async def test_phone_preferred_over_email(self):
        fields = DetectedFields(emails="Email", phones="Phone")
        rows = [{"Email": "a@x.com", "Phone": "555-0100"}]
        tool_calls = [
            logged("resolve_identities", resolution(("p-email", "email", ["a@x.com"]))),
            logged("resolve_identities", resolution(("p-phone", "phone", ["555-0100"]))),
        ]
        gateway = FakeGateway({"get_person": profile_each})

        result = await IdentityReconciler(gateway).reconcile(tool_calls, rows, fields)

        assert result.enriched_rows[0]["person_id"] == "p-phone"


class TestExportLinks:

    @staticmethod
    def fetcher(handler) -> ExportFetcher:
        return ExportFetcher(transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_profiles_loaded_from_export(self, email_fields):
        url = "https://exports.test/e1.json"

        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == url
            return httpx.Response(200, json=[{"domains": {"t0.person_id": "p1", "city_name": "Austin"}}])

        rows = [{"Email": "a@x.com"}]
        tool_calls = [
            logged("resolve_identities", resolution(("p1", "email", ["a@x.com"]))),
            logged("get_person", text_result({"export_url": url})),
        ]
        gateway = FakeGateway()

        result = await IdentityReconciler(gateway, self.fetcher(handler)).reconcile(tool_calls, rows, email_fields)

        assert result.export_links == [url]
        assert result.enriched_rows[0]["city_name"] == "Austin"
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_export_failure_is_a_warning(self, email_fields):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, text="gone")

        rows = [{"Email": "a@x.com"}]
        tool_calls = [
            logged("resolve_identities", resolution(("p1", "email", ["a@x.com"]))),
            logged("get_person", text_result({"download_urls": ["https://exports.test/missing.json"]})),
        ]
        gateway = FakeGateway({"get_person": text_result({})})

        result = await IdentityReconciler(gateway, self.fetcher(handler)).reconcile(tool_calls, rows, email_fields)

        assert result.enriched_count == 0
        assert any("Could not fetch export" in w for w in result.warnings)
