"""
Tests for the tool catalog and result formatting (tool_gateway/tools.py).

The catalog, TOOL_SCOPES and REQUIRED_SCOPES must stay consistent: the
OAuth challenge asks for REQUIRED_SCOPES, so a tool scope that is missing
there could never be granted through the normal consent flow.
"""

from tool_gateway.tools import (
    REQUIRED_SCOPES,
    TOOL_CATALOG,
    TOOL_SCOPES,
    TOOLS_BY_NAME,
    ToolOutput,
    format_result,
    is_known_tool,
    mcp_tool_descriptors,
)


class TestCatalog:
    def test_tool_names_are_unique(self):
        names = [tool.name for tool in TOOL_CATALOG]
        assert len(names) == len(set(names))

    def test_catalog_contents(self):
        assert set(TOOLS_BY_NAME) == {"whoami", "echo", "seedMyNotes", "listMyNotes", "addNote"}

    def test_every_tool_has_a_scope_mapping(self):
        assert set(TOOL_SCOPES) == set(TOOLS_BY_NAME)

    def test_required_scopes_is_sorted_union(self):
        expected = sorted({scope for scopes in TOOL_SCOPES.values() for scope in scopes})

        assert REQUIRED_SCOPES == expected
        assert REQUIRED_SCOPES == ["starter.echo", "starter.notes", "starter.whoami"]

    def test_is_known_tool(self):
        assert is_known_tool("echo")
        assert not is_known_tool("dropTables")
        assert not is_known_tool(None)
        assert not is_known_tool(["echo"])

    def test_mcp_descriptors_use_wire_names(self):
        """tools/list entries carry camelCase inputSchema, as MCP clients expect."""
        descriptors = {d["name"]: d for d in mcp_tool_descriptors()}

        assert set(descriptors) == set(TOOLS_BY_NAME)
        echo = descriptors["echo"]
        assert echo["inputSchema"]["required"] == ["message"]
        assert echo["description"]
        assert "input_schema" not in echo


class TestFormatResult:
    def test_echo(self):
        assert format_result("echo", {"ok": True, "message": "hi"}).summary == "Echo: hi"

    def test_echo_nested_under_data(self):
        assert format_result("echo", {"data": {"message": "hi"}}).summary == "Echo: hi"

    def test_whoami_prefers_email(self):
        payload = {
            "ok": True,
            "user": {"sub": "auth0|alice", "email": "alice@example.com"},
            "authorization": {
                "issuer": "https://tenant.example.com/",
                "scope_list": ["starter.whoami"],
                "permissions": [],
                "exp_in_seconds": 3599,
            },
        }

        summary = format_result("whoami", payload).summary

        assert summary == (
            "Verified OAuth user: alice@example.com issuer=https://tenant.example.com/ "
            "exp_in=59m scopes=starter.whoami"
        )

    def test_whoami_falls_back_to_subject(self):
        summary = format_result("whoami", {"user": {"sub": "auth0|bob"}, "authorization": {}}).summary

        assert summary == "Verified OAuth user: sub=auth0|bob scopes=(none)"

    def test_whoami_proof_text_wins(self):
        assert format_result("whoami", {"proof": "signed proof"}).summary == "signed proof"

    def test_notes_summaries(self):
        assert format_result("seedMyNotes", {"seeded": [{}, {}, {}]}).summary == "Seeded 3 notes."
        assert format_result("listMyNotes", {"notes": []}).summary == "You have 0 notes."
        assert format_result("addNote", {"note": {"text": "x" * 200}}).summary == "Added note: " + "x" * 120

    def test_unknown_tool_gets_generic_summary(self):
        output = format_result("mystery", {"value": 1})

        assert output == ToolOutput("Tool 'mystery' completed.", {"value": 1})

    def test_structured_content_is_the_payload(self):
        payload = {"ok": True, "notes": [{"id": "n1"}]}

        assert format_result("listMyNotes", payload).structured == payload

    def test_non_object_payload_has_no_structured_content(self):
        output = format_result("echo", "plain text reply")

        assert output.summary == "plain text reply"
        assert output.structured is None

    def test_empty_summary_falls_back_to_json(self, monkeypatch):
        from tool_gateway import tools

        monkeypatch.setitem(tools.RESULT_FORMATTERS, "blank", lambda payload: ToolOutput(""))

        output = format_result("blank", {"k": "v" * 1000})

        assert output.summary.startswith('{"k": "vvv')
        assert len(output.summary) == 800
