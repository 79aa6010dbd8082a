from __future__ import annotations

import json
import logging

from app.core.errors import (
    GraphAPIError,
    GraphMetricRejectedError,
    GraphRateLimitError,
    GraphTimeoutError,
    classify_graph_error,
    graph_error_to_app_error,
)
from app.core.logging import JSONFormatter
from app.core.redact import REDACTED, redact_payload, redact_token, short_detail, token_fingerprint


def test_rate_limit_detected_by_code_subcode_status_and_message():
    assert isinstance(classify_graph_error({"error": {"code": 17}}, 400), GraphRateLimitError)
    assert isinstance(classify_graph_error({"error": {"code": 1, "error_subcode": 4}}, 400), GraphRateLimitError)
    assert isinstance(classify_graph_error({}, 429), GraphRateLimitError)
    assert isinstance(
        classify_graph_error({"error": {"code": 1, "message": "Please reduce the amount of data"}}, 400),
        GraphRateLimitError,
    )


def test_metric_rejection_detected_by_code_or_message():
    assert isinstance(classify_graph_error({"error": {"code": 100}}, 400), GraphMetricRejectedError)
    assert isinstance(
        classify_graph_error({"error": {"code": 1, "message": "Unsupported metric views"}}, 400),
        GraphMetricRejectedError,
    )


def test_auth_errors_are_not_metric_rejections():
    error = classify_graph_error({"error": {"code": 190, "message": "Invalid OAuth access token"}}, 400)
    assert type(error) is GraphAPIError
    assert error.error_code == 190


def test_graph_errors_map_to_stable_codes():
    limited = graph_error_to_app_error(GraphRateLimitError("slow down", retry_after=90))
    assert (limited.code, limited.status_code, limited.extra["retry_after"]) == ("rate_limited", 429, 90)
    assert graph_error_to_app_error(GraphTimeoutError("t", status_code=504)).code == "upstream_timeout"
    hard = graph_error_to_app_error(GraphAPIError("boom", status_code=500))
    assert (hard.code, hard.status_code, hard.extra["upstream_status"]) == ("graph_fetch_failed", 502, 500)
    assert hard.to_payload()["ok"] is False


def test_redact_token_in_urls_and_bearer_headers():
    url = "https://graph.test/v24.0/1789/insights?metric=reach&access_token=EAAB123secret&since=1"
    assert "EAAB123secret" not in redact_token(url)
    assert f"access_token={REDACTED}" in redact_token(url)
    assert redact_token("Authorization: Bearer abc.def") == f"Authorization: Bearer {REDACTED}"


def test_redact_payload_and_short_detail():
    payload = redact_payload({"access_token": "x", "nested": ["url?access_token=y"]})
    assert payload == {"access_token": REDACTED, "nested": [f"url?access_token={REDACTED}"]}
    detail = short_detail("access_token=zzz " + "a" * 400)
    assert "zzz" not in detail
    assert len(detail) <= 181


def test_token_fingerprint_is_stable_and_opaque():
    fp = token_fingerprint("user-token", "salt")
    assert fp == token_fingerprint("user-token", "salt")
    assert fp != token_fingerprint("user-token", "other-salt")
    assert "user-token" not in fp and len(fp) == 16


def test_json_formatter_redacts_messages_and_keeps_extras():
    record = logging.LogRecord(
        "reachline.test", logging.INFO, __file__, 1,
        "GET /insights?access_token=EAAsecret failed", None, None,
    )
    record.account_id = "acct-1"
    line = json.loads(JSONFormatter().format(record))
    assert "EAAsecret" not in line["message"]
    assert line["account_id"] == "acct-1"
    assert line["logger"] == "reachline.test"
