"""Tests for call flow CRUD, line assignment and runtime lookup."""

import json
from unittest.mock import AsyncMock, patch

import pytest

from flows.validator import MisplacedTerminalStep
from services import call_flows
from services.call_flows import FlowInUseError
from tests.helpers.factories import FLOW, LINE, LINE_NUMBER, TENANT, step, tts

GREETING_AND_HANGUP = [
    step("s1", "greeting", message=tts("Thanks for calling")),
    step("s2", "hangup"),
]


def _flow_row(**extra):
    row = {
        "id": FLOW,
        "tenant_id": TENANT,
        "name": "Main line",
        "description": None,
        "is_active": True,
        "record_inbound_calls": False,
        "steps": json.dumps(GREETING_AND_HANGUP),
    }
    row.update(extra)
    return row


class TestCreateFlow:
    @pytest.mark.asyncio
    @patch("services.call_flows.query_one", new_callable=AsyncMock)
    async def test_create_stores_synthesized_audio(self, mock_query):
        mock_query.side_effect = lambda sql, *args: _flow_row(steps=args[5])
        synthesize = AsyncMock(return_value="https://cdn.test/hello.mp3")

        flow = await call_flows.create_flow(TENANT, {"name": "Main line", "steps": GREETING_AND_HANGUP}, synthesize)

        synthesize.assert_awaited_once_with("Thanks for calling", "echo")
        stored = json.loads(mock_query.call_args.args[6])
        assert stored[0]["config"]["message"]["generatedAudioUrl"] == "https://cdn.test/hello.mp3"
        assert flow["steps"][0]["config"]["message"]["generatedAudioUrl"] == "https://cdn.test/hello.mp3"
        assert flow["id"] == FLOW

    @pytest.mark.asyncio
    @patch("services.call_flows.query_one", new_callable=AsyncMock)
    async def test_failed_synthesis_still_saves(self, mock_query):
        mock_query.side_effect = lambda sql, *args: _flow_row(steps=args[5])
        synthesize = AsyncMock(side_effect=RuntimeError("tts down"))

        flow = await call_flows.create_flow(TENANT, {"name": "Main line", "steps": GREETING_AND_HANGUP}, synthesize)
        assert "generatedAudioUrl" not in flow["steps"][0]["config"]["message"]

    @pytest.mark.asyncio
    @patch("services.call_flows.query_one", new_callable=AsyncMock)
    async def test_invalid_flow_is_rejected_before_writing(self, mock_query):
        bad = [step("s1", "hangup"), step("s2", "greeting", message=tts("never heard"))]
        with pytest.raises(MisplacedTerminalStep):
            await call_flows.create_flow(TENANT, {"name": "Bad", "steps": bad}, AsyncMock())
        mock_query.assert_not_called()


class TestUpdateFlow:
    @pytest.mark.asyncio
    @patch("services.call_flows.query_one", new_callable=AsyncMock)
    async def test_update_only_given_columns(self, mock_query):
        mock_query.side_effect = [_flow_row(), _flow_row(name="Renamed")]
        flow = await call_flows.update_flow(TENANT, FLOW, {"name": "Renamed"})
        sql, *args = mock_query.call_args.args
        assert "name = $1" in sql
        assert "steps" not in sql
        assert args == ["Renamed", FLOW, TENANT]
        assert flow["name"] == "Renamed"

    @pytest.mark.asyncio
    @patch("services.call_flows.query_one", new_callable=AsyncMock, return_value=None)
    async def test_update_missing(self, mock_query):
        assert await call_flows.update_flow(TENANT, FLOW, {"name": "x"}) is None


class TestDeleteFlow:
    @pytest.mark.asyncio
    @patch("services.call_flows.execute", new_callable=AsyncMock)
    @patch("services.call_flows.query_one", new_callable=AsyncMock)
    async def test_delete_unused(self, mock_query, mock_execute):
        mock_query.side_effect = [_flow_row(), {"n": 0}]
        await call_flows.delete_flow(TENANT, FLOW)
        mock_execute.assert_awaited_once()

    @pytest.mark.asyncio
    @patch("services.call_flows.execute", new_callable=AsyncMock)
    @patch("services.call_flows.query_one", new_callable=AsyncMock)
    async def test_delete_in_use(self, mock_query, mock_execute):
        mock_query.side_effect = [_flow_row(), {"n": 2}]
        with pytest.raises(FlowInUseError) as exc:
            await call_flows.delete_flow(TENANT, FLOW)
        assert exc.value.line_count == 2
        mock_execute.assert_not_called()

    @pytest.mark.asyncio
    @patch("services.call_flows.query_one", new_callable=AsyncMock, return_value=None)
    async def test_delete_missing(self, mock_query):
        with pytest.raises(LookupError):
            await call_flows.delete_flow(TENANT, FLOW)


class TestDuplicateAndAssign:
    @pytest.mark.asyncio
    @patch("services.call_flows.query_one", new_callable=AsyncMock)
    async def test_duplicate_is_inactive_copy(self, mock_query):
        mock_query.side_effect = [_flow_row(), _flow_row(id="copy-id", name="Main line (Copy)", is_active=False)]
        flow = await call_flows.duplicate_flow(TENANT, FLOW)
        sql, *args = mock_query.call_args.args
        assert "false" in sql
        assert args[1] == "Main line (Copy)"
        assert json.loads(args[4]) == GREETING_AND_HANGUP
        assert flow["is_active"] is False

    @pytest.mark.asyncio
    @patch("services.call_flows.query_one", new_callable=AsyncMock)
    async def test_assign_to_missing_line(self, mock_query):
        mock_query.side_effect = [_flow_row(), None]
        with pytest.raises(LookupError, match="Phone line"):
            await call_flows.assign_to_line(TENANT, LINE, FLOW)

    @pytest.mark.asyncio
    @patch("services.call_flows.query_one", new_callable=AsyncMock)
    async def test_unassign_skips_flow_lookup(self, mock_query):
        mock_query.return_value = {"id": LINE, "tenant_id": TENANT, "call_flow_id": None, "phone_number": LINE_NUMBER}
        line = await call_flows.assign_to_line(TENANT, LINE, None)
        assert line["call_flow_id"] is None
        assert mock_query.call_count == 1


class TestFlowForLine:
    @pytest.mark.asyncio
    @patch("services.call_flows.query_one", new_callable=AsyncMock)
    async def test_parses_steps(self, mock_query):
        mock_query.return_value = {
            "line_id": LINE,
            "tenant_id": TENANT,
            "phone_number": LINE_NUMBER,
            "flow_id": FLOW,
            "flow_name": "Main line",
            "is_active": True,
            "record_inbound_calls": True,
            "steps": json.dumps(GREETING_AND_HANGUP),
        }
        line = await call_flows.get_flow_for_line(LINE)
        assert line.flow_id == FLOW
        assert line.record_inbound_calls
        assert [s.type for s in line.steps] == ["greeting", "hangup"]

    @pytest.mark.asyncio
    @patch("services.call_flows.query_one", new_callable=AsyncMock)
    async def test_line_without_flow(self, mock_query):
        mock_query.return_value = {"line_id": LINE, "tenant_id": TENANT, "phone_number": LINE_NUMBER,
                                   "flow_id": None, "steps": None}
        line = await call_flows.get_flow_for_line(LINE)
        assert line.flow_id is None
        assert line.steps == []
        assert not line.is_active

    @pytest.mark.asyncio
    @patch("services.call_flows.query_one", new_callable=AsyncMock, return_value=None)
    async def test_unknown_line(self, mock_query):
        assert await call_flows.get_flow_for_line(LINE) is None
