"""Roster feed client tests — date parsing, payload handling and fallbacks.

The HTTP session is mocked; nothing leaves the process.
"""

from __future__ import annotations

from datetime import date
from unittest.mock import MagicMock, patch

import pytest
import requests

from leave_engine.common.exceptions import RosterUnavailableError
from leave_engine.config import Settings
from leave_engine.core_hr.roster import (
    WORKER_DIRECTORY_PAYLOAD,
    RosterClient,
    parse_joining_date,
)


def _response(body, status_code: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    resp.headers = {}
    resp.json.return_value = body
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    else:
        resp.raise_for_status.return_value = None
    return resp


def _client(*responses, retries: int = 2) -> tuple[RosterClient, MagicMock]:
    session = requests.Session()
    session.post = MagicMock(side_effect=list(responses))
    client = RosterClient("https://roster.example.com/api/", "secret", retries=retries, session=session)
    return client, session.post


class TestParseJoiningDate:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("07-Apr-2025", date(2025, 4, 7)),
            (" 10-Mar-2025 ", date(2025, 3, 10)),
            ("2025-04-07", date(2025, 4, 7)),
            ("31-Feb-2025", None),
            ("07/04/2025", None),
            ("", None),
            (None, None),
        ],
    )
    def test_formats(self, raw, expected):
        assert parse_joining_date(raw) == expected


class TestRosterClient:
    def test_disabled_without_url(self):
        assert RosterClient.from_settings(Settings(ROSTER_API_URL="")) is None

    def test_from_settings_sets_auth_header(self):
        client = RosterClient.from_settings(
            Settings(ROSTER_API_URL="https://roster.example.com", ROSTER_API_TOKEN="tok"),
        )
        assert client is not None
        assert client.session.headers["Authorization"] == "Bearer tok"

    def test_fetch_parses_records_and_skips_malformed(self):
        body = {
            "result": "Success",
            "statuscode": 200,
            "message": "OK",
            "data": {
                "column": [],
                "data": [
                    {"user_id": 14674, "user_name": "Asha", "date_of_joining": "07-Apr-2025"},
                    {"user_name": "No id"},
                ],
            },
        }
        client, post = _client(_response(body))

        employees = client.fetch_employees()

        assert len(employees) == 1
        assert employees[0].user_id == "14674"
        assert employees[0].date_of_joining == "07-Apr-2025"
        post.assert_called_once_with(
            "https://roster.example.com/api/reports/worker-master-leave",
            json=WORKER_DIRECTORY_PAYLOAD,
            timeout=30,
        )

    def test_error_result_raises(self):
        client, _ = _client(_response({"result": "Error", "message": "token expired"}))

        with pytest.raises(RosterUnavailableError, match="token expired"):
            client.fetch_employees()

    @patch("leave_engine.core_hr.roster.time.sleep")
    def test_retries_then_gives_up(self, _sleep):
        client, post = _client(_response({}, 503), _response({}, 503))

        with pytest.raises(RosterUnavailableError):
            client.fetch_employees()
        assert post.call_count == 2

    @patch("leave_engine.core_hr.roster.time.sleep")
    def test_recovers_after_transient_failure(self, _sleep):
        body = {"result": "Success", "data": {"data": [{"user_id": "1001"}]}}
        client, _ = _client(
            _response({}, 502),
            _response(body),
        )

        assert [e.user_id for e in client.fetch_employees()] == ["1001"]

    @patch("leave_engine.core_hr.roster.time.sleep")
    def test_try_fetch_returns_none_when_unavailable(self, _sleep):
        session = requests.Session()
        session.post = MagicMock(side_effect=requests.ConnectionError("refused"))
        client = RosterClient("https://roster.example.com", retries=2, session=session)

        assert client.try_fetch_employees() is None
